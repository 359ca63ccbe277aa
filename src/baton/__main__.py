"""Entry point for `python -m baton` / `baton`.

Subcommands:
    baton run                         Run the gateway (default)
    baton receive --channel C ...     Queue an inbound message
    baton send CHANNEL [ENDPOINT] MSG Send a message out through a channel
    baton done ID                     Report a delivered message as handled
    baton control enqueue|get|ack     Control queue
    baton checkpoint create|list|latest|unsummarized
    baton checkpoint session-init|threshold-check|fetch
    baton task add|list|done|pause|resume|remove

Everything except ``run`` opens the database, does one thing, prints JSON
(plain text for the session-start replay commands) and exits (1 on invalid
input or a refused admission).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _fail(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return 1


def _run() -> None:
    from baton.app import BatonApp

    app = BatonApp()
    asyncio.run(app.run())


async def _with_db(fn: Callable[[], Awaitable[int]]) -> int:
    from baton.state import close_database, init_database

    await init_database()
    try:
        return await fn()
    except ValueError as exc:
        return _fail(str(exc))
    finally:
        await close_database()


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


async def _receive(args: argparse.Namespace) -> int:
    from baton.intake import receive

    result = await receive(
        args.channel,
        args.content,
        endpoint=args.endpoint,
        priority=args.priority,
        require_idle=args.require_idle,
        no_reply=args.no_reply,
    )
    _print(result.to_dict())
    return 0 if result.ok else 1


async def _send(args: argparse.Namespace) -> int:
    from baton.channels import ScriptChannelSender, send_outbound
    from baton.config import get_settings

    if len(args.rest) == 1:
        endpoint, text = None, args.rest[0]
    else:
        endpoint, text = args.rest[0], " ".join(args.rest[1:])
    sender = ScriptChannelSender(get_settings().channels_dir)
    ok = await send_outbound(sender, args.channel, endpoint, text)
    _print({"ok": ok})
    return 0 if ok else 1


async def _done(args: argparse.Namespace) -> int:
    from baton.state import complete_message

    ok = await complete_message(args.id, success=not args.failed, error=args.error)
    if not ok:
        return _fail(f"message {args.id} is not running")
    _print({"ok": True, "id": args.id})
    return 0


# ---------------------------------------------------------------------------
# Control
# ---------------------------------------------------------------------------


async def _control(args: argparse.Namespace) -> int:
    from baton.state import ack_control, enqueue_control, get_control_status

    match args.action:
        case "enqueue":
            record = await enqueue_control(
                args.content,
                priority=args.priority,
                require_idle=args.require_idle,
                bypass_state=args.bypass_state,
                ack_deadline_seconds=args.ack_deadline,
                available_in_seconds=args.available_in,
            )
            _print({"ok": True, "id": record.id})
        case "get":
            status = await get_control_status(args.id)
            if status is None:
                return _fail(f"control {args.id} not found")
            _print({"id": args.id, "status": status})
        case "ack":
            result = await ack_control(args.id)
            if not result.found:
                return _fail(f"control {args.id} not found")
            _print({"ok": True, "already_final": result.already_final, "status": result.status})
    return 0


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


async def _checkpoint(args: argparse.Namespace) -> int:
    from baton.state import (
        create_checkpoint,
        get_unsummarized_messages,
        get_unsummarized_range,
        latest_checkpoint,
        list_checkpoints,
    )

    match args.action:
        case "create":
            _print((await create_checkpoint(args.end_id, args.summary)).to_dict())
        case "list":
            _print([c.to_dict() for c in await list_checkpoints(args.limit)])
        case "latest":
            checkpoint = await latest_checkpoint()
            _print(checkpoint.to_dict() if checkpoint else None)
        case "unsummarized":
            if args.messages:
                _print([asdict(m) for m in await get_unsummarized_messages(args.limit)])
            else:
                _print(asdict(await get_unsummarized_range()))
    return 0


async def _bootstrap(args: argparse.Namespace) -> int:
    from baton import bootstrap

    match args.action:
        case "session-init":
            print(await bootstrap.session_init_context())
        case "threshold-check":
            notice = await bootstrap.threshold_notice()
            if notice:
                print(notice)
        case "fetch":
            if args.unsummarized:
                print(await bootstrap.fetch_unsummarized_context())
            elif args.begin is None or args.end is None:
                return _fail("fetch needs --unsummarized or both --begin and --end")
            else:
                print(await bootstrap.fetch_context(args.begin, args.end))
    return 0


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def _parse_run_at(value: str, timezone: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=ZoneInfo(timezone))
    return dt


async def _task(args: argparse.Namespace) -> int:
    from baton.config import get_settings
    from baton.state import delete_task, list_tasks, mark_task_done, pause_task, resume_task
    from baton.task_scheduler import add_task

    match args.action:
        case "add":
            tz = args.timezone or get_settings().timezone
            task = await add_task(
                args.name,
                args.prompt,
                run_at=_parse_run_at(args.at, tz) if args.at else None,
                cron_expression=args.cron,
                interval_seconds=args.every,
                timezone=tz,
                priority=args.priority,
                require_idle=args.require_idle,
                reply_channel=args.reply_channel,
                reply_endpoint=args.reply_endpoint,
                miss_threshold_seconds=args.miss_threshold,
            )
            _print(asdict(task))
        case "list":
            _print([asdict(t) for t in await list_tasks(args.status)])
        case "done":
            task = await mark_task_done(args.id, args.error)
            if task is None:
                return _fail(f"task {args.id} not found")
            _print({"ok": True, "id": task.id, "status": task.status})
        case "pause" | "resume" | "remove":
            fn = {"pause": pause_task, "resume": resume_task, "remove": delete_task}[args.action]
            if not await fn(args.id):
                return _fail(f"cannot {args.action} task {args.id}")
            _print({"ok": True, "id": args.id})
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="baton",
        description="Message gateway and control plane for a hosted agent session",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the gateway")

    p = sub.add_parser("receive", help="Queue an inbound message")
    p.add_argument("--channel", help="Source channel (default 'system' with --no-reply)")
    p.add_argument("--endpoint")
    p.add_argument("--priority", type=int, default=3, help="1 urgent, 2 high, 3 normal")
    p.add_argument("--require-idle", action="store_true")
    p.add_argument("--no-reply", action="store_true", help="Don't append a reply route")
    p.add_argument("--content", required=True)
    p.set_defaults(handler=_receive)

    p = sub.add_parser("send", help="Send a message through a channel")
    p.add_argument("channel")
    p.add_argument("rest", nargs="+", metavar="[endpoint] message")
    p.set_defaults(handler=_send)

    p = sub.add_parser("done", help="Report a delivered message as handled")
    p.add_argument("id", type=int)
    p.add_argument("--failed", action="store_true")
    p.add_argument("--error")
    p.set_defaults(handler=_done)

    control = sub.add_parser("control", help="Control queue").add_subparsers(
        dest="action", required=True
    )
    p = control.add_parser("enqueue")
    p.add_argument("--content", required=True, help="May contain __CONTROL_ID__")
    p.add_argument("--priority", type=int, default=3, help="0 (probes) to 3")
    p.add_argument("--require-idle", action="store_true")
    p.add_argument("--bypass-state", action="store_true")
    p.add_argument("--ack-deadline", type=float, metavar="SECONDS")
    p.add_argument("--available-in", type=float, metavar="SECONDS")
    p.set_defaults(handler=_control)
    for action in ("get", "ack"):
        p = control.add_parser(action)
        p.add_argument("id", type=int)
        p.set_defaults(handler=_control)

    checkpoint = sub.add_parser("checkpoint", help="Summarization checkpoints").add_subparsers(
        dest="action", required=True
    )
    p = checkpoint.add_parser("create")
    p.add_argument("end_id", type=int)
    p.add_argument("--summary")
    p.set_defaults(handler=_checkpoint)
    p = checkpoint.add_parser("list")
    p.add_argument("--limit", type=int)
    p.set_defaults(handler=_checkpoint)
    checkpoint.add_parser("latest").set_defaults(handler=_checkpoint)
    p = checkpoint.add_parser("unsummarized")
    p.add_argument("--messages", action="store_true", help="Print the messages, not the range")
    p.add_argument("--limit", type=int)
    p.set_defaults(handler=_checkpoint)
    checkpoint.add_parser(
        "session-init", help="Replay context for a new session"
    ).set_defaults(handler=_bootstrap)
    checkpoint.add_parser(
        "threshold-check", help="Print a sync instruction when over the threshold"
    ).set_defaults(handler=_bootstrap)
    p = checkpoint.add_parser("fetch", help="Summary plus messages in an id range")
    p.add_argument("--begin", type=int)
    p.add_argument("--end", type=int)
    p.add_argument("--unsummarized", action="store_true")
    p.set_defaults(handler=_bootstrap)

    task = sub.add_parser("task", help="Scheduled tasks").add_subparsers(
        dest="action", required=True
    )
    p = task.add_parser("add")
    p.add_argument("--name", required=True)
    p.add_argument("--prompt", required=True)
    when = p.add_mutually_exclusive_group(required=True)
    when.add_argument("--at", help="ISO time for a one-time task")
    when.add_argument("--cron", help="Cron expression for a recurring task")
    when.add_argument("--every", type=int, metavar="SECONDS", help="Interval task")
    p.add_argument("--timezone")
    p.add_argument("--priority", type=int, default=3)
    p.add_argument("--require-idle", action="store_true")
    p.add_argument("--reply-channel")
    p.add_argument("--reply-endpoint")
    p.add_argument("--miss-threshold", type=int, metavar="SECONDS")
    p.set_defaults(handler=_task)
    p = task.add_parser("list")
    p.add_argument("--status")
    p.set_defaults(handler=_task)
    p = task.add_parser("done")
    p.add_argument("id")
    p.add_argument("--error")
    p.set_defaults(handler=_task)
    for action in ("pause", "resume", "remove"):
        p = task.add_parser(action)
        p.add_argument("id")
        p.set_defaults(handler=_task)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command in (None, "run"):
        _run()
        return 0
    return asyncio.run(_with_db(lambda: args.handler(args)))


if __name__ == "__main__":
    sys.exit(main())
