from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any, Dict, Iterable, Optional

from .exceptions import FatalWorkerError, ShutdownTimeoutError
from .pool import WorkerPool

log = logging.getLogger("analytics.supervisor")

EXIT_OK = 0
# graceful shutdown ran out of time or failed
EXIT_FORCED = 1
# broker gone, unhandled error; the process manager should restart us
EXIT_FATAL = 2


class LifecycleSupervisor:
    """
    Maps signals and fatal errors around a WorkerPool to a process exit code.

    SIGINT/SIGTERM drain the pool within `shutdown_timeout_s` (EXIT_OK, or
    EXIT_FORCED when the drain times out or errors). Fatal conditions return
    EXIT_FATAL straight away without draining.
    """

    def __init__(
        self,
        pool: WorkerPool,
        *,
        shutdown_timeout_s: float = 5.0,
        signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        self.pool = pool
        self.shutdown_timeout_s = shutdown_timeout_s
        self.signals = tuple(signals)
        self._done: Optional[asyncio.Future] = None
        self._shutting_down = False
        self._shutdown_task: Optional[asyncio.Task] = None
        self._installed: list = []

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()
        self._install_signal_handlers(loop)
        previous_handler = loop.get_exception_handler()
        loop.set_exception_handler(self._on_loop_exception)
        self.pool.on_fatal = self._on_fatal

        pool_task = asyncio.create_task(self.pool.run(), name="worker-pool")
        pool_task.add_done_callback(self._on_pool_exit)
        try:
            code = await self._done
        finally:
            self._remove_signal_handlers(loop)
            loop.set_exception_handler(previous_handler)
            if not pool_task.done():
                pool_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, FatalWorkerError):
                    await pool_task
        log.info("worker exiting with code %s", code, extra={"event": "worker_exit", "exit_code": code})
        return code

    def request_shutdown(self, reason: str = "SIGTERM") -> None:
        if self._shutting_down or self._done is None or self._done.done():
            log.info("shutdown already in progress, ignoring %s", reason, extra={"event": "shutdown_ignored", "signal": reason})
            return
        self._shutting_down = True
        log.info(
            "received %s, draining %s job(s)",
            reason,
            self.pool.active,
            extra={"event": "shutdown_requested", "signal": reason},
        )
        self._shutdown_task = asyncio.create_task(self._shutdown(), name="graceful-shutdown")

    async def _shutdown(self) -> None:
        try:
            await asyncio.wait_for(self.pool.close(), timeout=self.shutdown_timeout_s)
        except asyncio.TimeoutError:
            err = ShutdownTimeoutError(self.shutdown_timeout_s)
            log.error(str(err), extra={"event": "shutdown_timeout", "exit_code": EXIT_FORCED, "error": str(err)})
            self._finish(EXIT_FORCED)
            return
        except Exception as exc:
            log.exception("graceful shutdown failed", extra={"event": "shutdown_failed", "exit_code": EXIT_FORCED, "error": str(exc)})
            self._finish(EXIT_FORCED)
            return
        log.info("graceful shutdown complete", extra={"event": "shutdown_complete", "exit_code": EXIT_OK})
        self._finish(EXIT_OK)

    def _on_fatal(self, error: BaseException) -> None:
        if self._done is None or self._done.done():
            return
        log.critical("fatal: %s", error, extra={"event": "fatal", "exit_code": EXIT_FATAL, "error": str(error)})
        self._finish(EXIT_FATAL)

    def _on_pool_exit(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            if not self._shutting_down:
                self._on_fatal(FatalWorkerError("worker pool stopped unexpectedly"))
            return
        self._on_fatal(exc)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get("exception")
        log.critical(
            "unhandled error: %s",
            context.get("message"),
            exc_info=error,
            extra={"event": "unhandled_error", "exit_code": EXIT_FATAL, "error": str(error) if error else None},
        )
        self._on_fatal(error or RuntimeError(context.get("message", "unhandled error")))

    def _finish(self, code: int) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_result(code)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self.signals:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            except (NotImplementedError, RuntimeError):
                # not supported on this platform / not the main thread
                log.debug("cannot install handler for %s", sig.name)
                continue
            self._installed.append(sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed.clear()
