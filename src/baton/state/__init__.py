"""SQLite store.

All functions are async using aiosqlite.
Module-level connection, initialized by init_database().

This package is split into domain-specific submodules:
  schema      : DDL
  connection  : connection lifecycle, write utilities
  messages    : conversation queue
  control     : control queue with ack deadlines
  checkpoints : summarization checkpoints
  tasks       : scheduled tasks and run history
"""

# Re-export every public symbol so that `from baton.state import X` works.

from baton.state.checkpoints import (
    create_checkpoint,
    get_recent_unsummarized_messages,
    get_unsummarized_messages,
    get_unsummarized_range,
    latest_checkpoint,
    list_checkpoints,
)
from baton.state.connection import (
    _get_db,
    _init_test_database,
    atomic_write,
    close_database,
    init_database,
)
from baton.state.control import (
    CONTROL_ID_PLACEHOLDER,
    ack_control,
    claim_control,
    cleanup_control_queue,
    enqueue_control,
    expire_timed_out_controls,
    get_control,
    get_control_status,
    next_pending_control,
    retry_or_fail_control,
)
from baton.state.messages import (
    claim_message,
    complete_message,
    fail_stale_messages,
    get_last_messages_after,
    get_message,
    get_messages_in_range,
    get_running_message,
    insert_message,
    list_messages,
    next_pending_message,
    prune_done_messages,
    record_delivery_failure,
    requeue_running_messages,
)
from baton.state.tasks import (
    claim_task,
    cleanup_task_history,
    create_task,
    delete_task,
    expire_stale_task,
    get_completed_repeating_tasks,
    get_next_due_task,
    get_overdue_repeating_tasks,
    get_stale_running_tasks,
    get_task,
    get_task_history,
    list_tasks,
    mark_task_done,
    pause_task,
    release_task_claim,
    reschedule_task,
    resume_task,
    update_task,
)

__all__ = [
    "CONTROL_ID_PLACEHOLDER",
    "_get_db",
    "_init_test_database",
    "ack_control",
    "atomic_write",
    "claim_control",
    "claim_message",
    "claim_task",
    "cleanup_control_queue",
    "cleanup_task_history",
    "close_database",
    "complete_message",
    "create_checkpoint",
    "create_task",
    "delete_task",
    "enqueue_control",
    "expire_stale_task",
    "expire_timed_out_controls",
    "fail_stale_messages",
    "get_completed_repeating_tasks",
    "get_control",
    "get_control_status",
    "get_last_messages_after",
    "get_message",
    "get_messages_in_range",
    "get_next_due_task",
    "get_overdue_repeating_tasks",
    "get_recent_unsummarized_messages",
    "get_running_message",
    "get_stale_running_tasks",
    "get_task",
    "get_task_history",
    "get_unsummarized_messages",
    "get_unsummarized_range",
    "init_database",
    "insert_message",
    "latest_checkpoint",
    "list_checkpoints",
    "list_messages",
    "list_tasks",
    "mark_task_done",
    "next_pending_control",
    "next_pending_message",
    "pause_task",
    "prune_done_messages",
    "record_delivery_failure",
    "release_task_claim",
    "requeue_running_messages",
    "reschedule_task",
    "resume_task",
    "retry_or_fail_control",
    "update_task",
]
