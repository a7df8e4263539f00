# services/pool/result_channel.py
"""
Result Channel – orchestrator side of the link to the worker pool process.

Transport is a duplex ``multiprocessing.Pipe`` to a process started from the
``spawn`` context.  Messages travel as JSON-mode dicts and are rebuilt into
typed models on arrival.  Once the process dies or the pipe hits EOF the
channel is *down*: every ``send``/``receive`` raises ``ChannelLost`` until
``launch()`` is called again.
"""

import asyncio
import multiprocessing
from multiprocessing.connection import Connection
from multiprocessing.process import BaseProcess
from typing import Any, AsyncIterator, Callable, Dict, Optional

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from core.config import Settings, get_settings
from core.exceptions import ChannelLost
from models.messages import ShutdownCommand, decode_event, encode

from .worker_process import run_worker_pool

ProcessFactory = Callable[[Connection, Dict[str, Any]], BaseProcess]


class ResultChannel:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        process_factory: Optional[ProcessFactory] = None,
    ):
        self._settings = settings or get_settings()
        self._ctx = multiprocessing.get_context("spawn")
        self._factory = process_factory or self._spawn
        self._process: Optional[BaseProcess] = None
        self._conn: Optional[Connection] = None
        # The child end stays referenced here until teardown; liveness is
        # taken from the process handle, not from pipe EOF alone.
        self._child_conn: Optional[Connection] = None
        self._up = False
        self.launches = 0

    def _spawn(self, child_conn: Connection, payload: Dict[str, Any]) -> BaseProcess:
        return self._ctx.Process(
            target=run_worker_pool,
            args=(child_conn, payload),
            name="worker-pool",
            daemon=True,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def alive(self) -> bool:
        return self._up and self._process is not None and self._process.is_alive()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def _mark_down(self, reason: str) -> None:
        if self._up:
            logger.error(f"Worker pool channel lost: {reason}")
        self._up = False

    def _teardown(self) -> None:
        for conn in (self._conn, self._child_conn):
            if conn is not None:
                try:
                    conn.close()
                except OSError:
                    pass
        self._conn = None
        self._child_conn = None
        self._up = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def launch(self) -> None:
        """Start a fresh worker pool process, discarding any previous one."""
        if self._process is not None:
            if self._process.is_alive():
                self._process.terminate()
                self._process.join(timeout=5)
            self._teardown()

        parent_conn, child_conn = self._ctx.Pipe(duplex=True)
        process = self._factory(child_conn, self._settings.to_payload())
        process.start()

        self._process = process
        self._conn = parent_conn
        self._child_conn = child_conn
        self._up = True
        self.launches += 1
        logger.info(f"Worker pool launched (pid={process.pid}, launch #{self.launches})")

    async def close(self, timeout: Optional[float] = None) -> None:
        """Ask the pool to shut down, wait (bounded), then terminate."""
        if self._process is None:
            return
        timeout = self._settings.POOL_SHUTDOWN_TIMEOUT if timeout is None else timeout
        if self.alive:
            try:
                self.send(ShutdownCommand())
            except ChannelLost:
                pass

        process = self._process
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, process.join, timeout)
        if process.is_alive():
            logger.warning(f"Worker pool did not exit within {timeout}s, terminating")
            process.terminate()
            await loop.run_in_executor(None, process.join, 5)
        logger.info(f"Worker pool exited (code={process.exitcode})")
        self._teardown()

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------
    def send(self, message: BaseModel) -> None:
        if not self.alive or self._conn is None:
            raise ChannelLost("Worker pool is not running")
        try:
            self._conn.send(encode(message))
        except (BrokenPipeError, EOFError, OSError) as exc:
            self._mark_down(str(exc))
            raise ChannelLost(f"Worker pool unreachable: {exc}") from exc

    def _poll(self, conn: Connection) -> Optional[Dict[str, Any]]:
        if conn.poll(self._settings.CHANNEL_POLL_INTERVAL):
            return conn.recv()
        return None

    async def receive(self):
        """
        Wait one poll interval for the next event.

        Returns the decoded event, or ``None`` if nothing arrived (or the
        payload was malformed).  Raises ``ChannelLost`` once the pool is gone.
        """
        conn = self._conn
        if not self._up or conn is None:
            raise ChannelLost("Worker pool is not running")

        loop = asyncio.get_running_loop()
        try:
            payload = await loop.run_in_executor(None, self._poll, conn)
        except (EOFError, OSError) as exc:
            self._mark_down(f"pipe closed ({exc!r})")
            raise ChannelLost("Worker pool closed the channel") from exc

        if payload is None:
            if self._process is None or not self._process.is_alive():
                code = self._process.exitcode if self._process is not None else None
                self._mark_down(f"process exited (code={code})")
                raise ChannelLost(f"Worker pool exited (code={code})")
            return None

        try:
            return decode_event(payload)
        except PydanticValidationError as exc:
            logger.warning(f"Discarding malformed event from worker pool: {exc}")
            return None

    async def events(self) -> AsyncIterator[Any]:
        """Yield events until the channel goes down."""
        while True:
            event = await self.receive()
            if event is not None:
                yield event
