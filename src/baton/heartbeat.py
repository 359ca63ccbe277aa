"""Heartbeat engine: liveness probing and session recovery.

Health moves through three states, and only this module writes it:

``ok``
    A priority-0, state-bypassing probe goes out every ``heartbeat.interval``.
    If it isn't acked in time, one immediate *verify* probe follows.  Only a
    failed verify moves health to ``recovering`` (and kills the session).
``recovering``
    Start the session if it's gone, count the attempt, send a *recovery*
    probe.  An ack returns to ``ok``; a failure kills the session and tries
    again until ``heartbeat.max_restart_failures`` is reached → ``down``.
``down``
    No automatic restarts.  If someone brings the session back by hand it
    is probed every ``heartbeat.down_check_interval``; an ack returns to ``ok``.

Killing the session puts its ``running`` message back in the queue, since
the agent will never report it done.  Each return to ``ok`` flushes the
pending-channel record so everyone who was turned away hears that the agent
is back.

The in-flight probe is persisted to the heartbeat-pending file so a gateway
restart picks up where it left off instead of sending a second probe.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from baton.config import get_settings
from baton.liveness import read_health, write_health
from baton.logger import logger
from baton.state import enqueue_control, get_control_status, requeue_running_messages
from baton.types import Health, HeartbeatProbe, HeartbeatState, HostedSession
from baton.utils import parse_iso, to_iso, utc_now, write_json_atomic

PROBE_PRIORITY = 0


def _load_pending() -> HeartbeatProbe | None:
    path = get_settings().heartbeat_pending_file
    try:
        raw = json.loads(path.read_text())
        return HeartbeatProbe(
            control_id=int(raw["control_id"]),
            phase=raw["phase"],
            sent_at=raw["sent_at"],
            attempt=int(raw.get("attempt", 0)),
        )
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as exc:
        logger.warning("Discarding unreadable heartbeat-pending file", err=str(exc))
        return None


class HeartbeatEngine:
    def __init__(
        self,
        session: HostedSession,
        notify_recovered: Callable[[], Awaitable[object]],
        *,
        initial_health: Health | None = None,
    ) -> None:
        self.session = session
        self.notify_recovered = notify_recovered
        pending = _load_pending()
        self.state = HeartbeatState(
            health=initial_health or read_health(get_settings().status_file),
            pending=pending,
            restart_attempts=pending.attempt if pending else 0,
        )
        if pending:
            logger.info("Resuming in-flight heartbeat probe", **pending.to_dict())

    @property
    def health(self) -> Health:
        return self.state.health

    # --- persistence ---

    def _set_pending(self, probe: HeartbeatProbe | None) -> None:
        self.state.pending = probe
        path = get_settings().heartbeat_pending_file
        if probe is None:
            path.unlink(missing_ok=True)
        else:
            write_json_atomic(path, probe.to_dict())

    def _set_health(self, health: Health, cause: str, now: datetime) -> None:
        previous = self.state.health
        write_health(get_settings().status_file, health, checked_at=to_iso(now))
        self.state.health = health
        if previous != health:
            logger.warning("Health transition", previous=previous, health=health, cause=cause)

    # --- probes ---

    async def _send_probe(self, phase: str, now: datetime) -> HeartbeatProbe:
        h = get_settings().heartbeat
        deadline = h.verify_ack_deadline if phase == "verify" else h.ack_deadline
        record = await enqueue_control(
            h.probe_content,
            priority=PROBE_PRIORITY,
            bypass_state=True,
            ack_deadline_seconds=deadline,
            now=now,
        )
        probe = HeartbeatProbe(
            control_id=record.id,
            phase=phase,  # type: ignore[arg-type]
            sent_at=to_iso(now),
            attempt=self.state.restart_attempts,
        )
        self._set_pending(probe)
        self.state.last_probe_at = probe.sent_at
        logger.info("Heartbeat probe sent", control_id=record.id, phase=phase, deadline=deadline)
        return probe

    @staticmethod
    def _elapsed(since: str | None, now: datetime, seconds: float) -> bool:
        return since is None or now - parse_iso(since) >= timedelta(seconds=seconds)

    # --- state machine ---

    async def tick(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        h = get_settings().heartbeat

        pending = self.state.pending
        if pending is not None:
            status = await get_control_status(pending.control_id, now)
            if status in ("pending", "running"):
                return
            if status == "done":
                await self._on_ack(pending, now)
            else:
                await self._on_failure(pending, status or "not_found", now)
            return

        if self.state.health == "ok":
            if not await self.session.exists():
                return
            if self._elapsed(self.state.last_probe_at, now, h.interval):
                await self._send_probe("primary", now)
            return

        if self.state.health == "recovering":
            await self._attempt_recovery(now)
            return

        # down: only probe a session someone brought back by hand
        if await self.session.exists() and self._elapsed(
            self.state.last_down_check_at, now, h.down_check_interval
        ):
            self.state.last_down_check_at = to_iso(now)
            await self._send_probe("down", now)

    async def _attempt_recovery(self, now: datetime) -> None:
        h = get_settings().heartbeat
        self.state.restart_attempts += 1
        attempt = self.state.restart_attempts
        if not await self.session.exists():
            logger.info("Starting session", attempt=attempt, max_attempts=h.max_restart_failures)
            if not await self.session.start():
                logger.error("Session start failed", attempt=attempt)
                self._check_exhausted(f"session_start_failed attempt={attempt}", now)
                return
        await self._send_probe("recovery", now)

    def _check_exhausted(self, cause: str, now: datetime) -> None:
        if self.state.restart_attempts >= get_settings().heartbeat.max_restart_failures:
            self._set_health("down", f"{cause}; max restart failures reached", now)

    async def _kill_session(self, cause: str, now: datetime) -> None:
        """Kill the session and requeue whatever message it was working on."""
        await self.session.kill()
        requeued = await requeue_running_messages(
            f"session killed: {cause}",
            max_retries=get_settings().dispatcher.max_retries,
            now=now,
        )
        if requeued:
            logger.warning("Requeued in-flight messages", message_ids=requeued, cause=cause)

    async def _on_ack(self, probe: HeartbeatProbe, now: datetime) -> None:
        self._set_pending(None)
        self.state.restart_attempts = 0
        logger.info("Heartbeat acked", control_id=probe.control_id, phase=probe.phase)
        if self.state.health != "ok":
            self._set_health("ok", f"{probe.phase}_ack", now)
            try:
                await self.notify_recovered()
            except Exception:
                logger.exception("Failed to notify pending channels")

    async def _on_failure(self, probe: HeartbeatProbe, status: str, now: datetime) -> None:
        self._set_pending(None)
        cause = f"{probe.phase}_{status}"
        logger.warning("Heartbeat probe failed", control_id=probe.control_id, cause=cause)

        if probe.phase == "primary" and self.state.health == "ok":
            await self._send_probe("verify", now)
            return

        if probe.phase == "verify" and self.state.health == "ok":
            self.state.restart_attempts = 0
            self._set_health("recovering", cause, now)
            await self._kill_session(cause, now)
            return

        if probe.phase == "recovery" and self.state.health == "recovering":
            await self._kill_session(cause, now)
            self._check_exhausted(cause, now)
            return

        # down-check failures just wait for the next check
        logger.info("Heartbeat failure ignored", health=self.state.health, cause=cause)

    async def run(self) -> None:
        logger.info("Heartbeat engine started", health=self.state.health)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Error in heartbeat tick")
            await asyncio.sleep(get_settings().heartbeat.poll_interval)
