# services/pool/worker_process.py
"""
Worker pool process.

Runs in its own interpreter (spawned by ``ResultChannel``).  It owns the
Target Registry and therefore every scrape loop and browser.  Commands come
in over the pipe, results and status updates go back out the same way.
"""

import asyncio
import signal
from multiprocessing.connection import Connection
from typing import Any, Dict, Optional

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from core.config import Settings
from core.exceptions import ReconfigurationFailure
from core.logging import setup_logging
from models.messages import (
    FaultEvent,
    ReadyEvent,
    ReconfigureCommand,
    ShutdownCommand,
    decode_command,
    encode,
)
from services.browser.session import BrowserSessionManager
from services.scraper.registry import TargetRegistry
from services.scraper.worker_loop import SessionManager


class WorkerPoolHost:
    """Command loop of the worker pool process."""

    def __init__(
        self,
        conn: Connection,
        settings: Settings,
        sessions: Optional[SessionManager] = None,
    ):
        self._conn = conn
        self._settings = settings
        self._orchestrator_gone = False
        self.registry = TargetRegistry(
            sessions or BrowserSessionManager(settings),
            self.send,
            settings=settings,
        )

    def send(self, message) -> None:
        if self._orchestrator_gone:
            return
        try:
            self._conn.send(encode(message))
        except (BrokenPipeError, EOFError, OSError) as exc:
            logger.warning(f"Orchestrator unreachable, dropping outgoing messages: {exc}")
            self._orchestrator_gone = True

    def _poll(self) -> Optional[Dict[str, Any]]:
        if self._conn.poll(self._settings.CHANNEL_POLL_INTERVAL):
            return self._conn.recv()
        return None

    async def serve(self) -> None:
        loop = asyncio.get_running_loop()
        self.send(ReadyEvent())
        logger.info("Worker pool ready")
        try:
            while not self._orchestrator_gone:
                try:
                    payload = await loop.run_in_executor(None, self._poll)
                except (EOFError, OSError):
                    logger.warning("Orchestrator closed the channel")
                    break
                if payload is None:
                    continue

                try:
                    command = decode_command(payload)
                except PydanticValidationError as exc:
                    logger.error(f"Ignoring malformed command: {exc}")
                    self.send(FaultEvent(message=f"Malformed command: {exc.errors()}"))
                    continue

                if isinstance(command, ShutdownCommand):
                    logger.info("Shutdown requested")
                    break
                await self._reconfigure(command)
        finally:
            await self.registry.shutdown()
            logger.info("Worker pool stopped")

    async def _reconfigure(self, command: ReconfigureCommand) -> None:
        try:
            await self.registry.replace(command.targets, generation=command.generation)
        except ReconfigurationFailure as exc:
            logger.error(f"Rejected generation {command.generation}: {exc.message}")
            self.send(FaultEvent(message=exc.message, generation=command.generation))


def run_worker_pool(conn: Connection, settings_payload: Dict[str, Any]) -> None:
    """Process entry point. ``settings_payload`` is ``Settings.to_payload()``."""
    settings = Settings(**settings_payload)
    setup_logging(settings.LOG_LEVEL, process="worker-pool")
    # Ctrl-C goes to the whole process group; the orchestrator decides
    # when the pool stops.
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    host = WorkerPoolHost(conn, settings)
    try:
        asyncio.run(host.serve())
    finally:
        conn.close()
