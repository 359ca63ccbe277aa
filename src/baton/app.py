"""Gateway process: owns the store and runs every polling loop."""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Any

from aiohttp import web

from baton.channels import ScriptChannelSender, notify_pending_channels
from baton.config import get_settings
from baton.dispatcher import Dispatcher
from baton.heartbeat import HeartbeatEngine
from baton.http_server import start_http_server
from baton.logger import apply_level, logger
from baton.session import StatusFileIdleSource, TmuxSession
from baton.state import close_database, init_database
from baton.sweeper import Sweeper
from baton.task_scheduler import TaskScheduler
from baton.types import ChannelSender, Health, HostedSession, IdleSource
from baton.utils import create_background_task


class BatonApp:
    """Wires the session, channels and loops together."""

    def __init__(
        self,
        session: HostedSession | None = None,
        idle_source: IdleSource | None = None,
        sender: ChannelSender | None = None,
    ) -> None:
        s = get_settings()
        self.session = session or TmuxSession.from_settings()
        self.idle_source = idle_source or StatusFileIdleSource.from_settings()
        self.sender = sender or ScriptChannelSender(s.channels_dir)

        self.dispatcher = Dispatcher(self.session, self.idle_source)
        self.sweeper = Sweeper()
        self.scheduler = TaskScheduler(self.session)
        self.heartbeat: HeartbeatEngine | None = None  # Needs the DB; built in run()

        self._tasks: list[asyncio.Task[Any]] = []
        self._http_runner: web.AppRunner | None = None
        self._shutting_down = False
        self._stopped = asyncio.Event()

    async def _notify_recovered(self) -> int:
        return await notify_pending_channels(self.sender)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._http_runner:
            await self._http_runner.cleanup()
        await close_database()
        self._stopped.set()

    async def run(self) -> None:
        """Startup sequence. Returns after a shutdown signal."""
        s = get_settings()
        apply_level(s.logging.level)
        await init_database()
        logger.info("Database initialized", path=str(s.db_path))

        self.heartbeat = HeartbeatEngine(self.session, self._notify_recovered)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
            )

        self._tasks = [
            create_background_task(self.sweeper.run(), name="sweeper"),
            create_background_task(self.heartbeat.run(), name="heartbeat"),
            create_background_task(self.dispatcher.run(), name="dispatcher"),
            create_background_task(self.scheduler.run(), name="scheduler"),
        ]

        if s.server.enabled:
            self._http_runner = await start_http_server(self._make_http_deps())

        logger.info("Gateway running", session=s.session.name)
        await self._stopped.wait()

    # ------------------------------------------------------------------
    # Dependency adapters
    # ------------------------------------------------------------------

    def _make_http_deps(self) -> Any:
        """Create the dependency object for the HTTP server."""
        app = self

        class _Deps:
            def health(self) -> Health:
                return app.heartbeat.health if app.heartbeat else "ok"

            async def session_exists(self) -> bool:
                return await app.session.exists()

        return _Deps()
