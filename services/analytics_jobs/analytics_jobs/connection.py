from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, List, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .config import RedisSettings
from .metrics import record_broker_state
from .models import ConnectionState

log = logging.getLogger("analytics.connection")

# Errors that mean "the transport is unhealthy", as opposed to bugs in our code.
TRANSPORT_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

Listener = Callable[[ConnectionState, ConnectionState, Optional[BaseException]], None]

_LEVELS = {
    ConnectionState.READY: logging.INFO,
    ConnectionState.CONNECTING: logging.INFO,
    ConnectionState.DISCONNECTED: logging.INFO,
    ConnectionState.RECONNECTING: logging.WARNING,
    ConnectionState.ERRORED: logging.ERROR,
}


def reconnect_delay(attempt: int, unit_s: float, cap_s: float) -> float:
    """Linear backoff capped at `cap_s` (attempt 1, 2, 3... => unit, 2*unit, ...)."""

    return min(max(1, attempt) * unit_s, cap_s)


def create_redis_client(settings: RedisSettings) -> Redis:
    common = dict(
        decode_responses=True,
        socket_connect_timeout=settings.connect_timeout_s,
        retry_on_timeout=False,
    )
    if settings.url:
        return Redis.from_url(settings.url, **common)
    return Redis(
        host=settings.host,
        port=settings.port,
        username=settings.username,
        password=settings.password,
        ssl=settings.tls,
        **common,
    )


class ConnectionManager:
    """
    Owns the shared broker client and tracks whether it is usable.

    `start()` kicks off the connect loop in the background. Each failed attempt
    moves the manager to `reconnecting` and sleeps `reconnect_delay(n)`. After
    `max_reconnect_attempts` consecutive failures (0 = never) the loop parks in
    `errored` until someone calls `probe()`.

    Only state changes are logged and passed to listeners.
    """

    def __init__(
        self,
        client: Any,
        *,
        connect_timeout_s: float = 10.0,
        reconnect_unit_s: float = 0.2,
        reconnect_cap_s: float = 2.0,
        max_reconnect_attempts: int = 20,
        health_check_interval_s: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.connect_timeout_s = connect_timeout_s
        self.reconnect_unit_s = reconnect_unit_s
        self.reconnect_cap_s = reconnect_cap_s
        self.max_reconnect_attempts = max_reconnect_attempts
        self.health_check_interval_s = health_check_interval_s
        self._sleep = sleep

        self._state = ConnectionState.CONNECTING
        self._listeners: List[Listener] = []
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._ready = asyncio.Event()
        self._closed = False

        self.failures = 0
        self.last_error: Optional[BaseException] = None

    @classmethod
    def from_settings(cls, settings: RedisSettings, client: Any = None) -> "ConnectionManager":
        return cls(
            client if client is not None else create_redis_client(settings),
            connect_timeout_s=settings.connect_timeout_s,
            reconnect_unit_s=settings.reconnect_unit_s,
            reconnect_cap_s=settings.reconnect_cap_s,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            health_check_interval_s=settings.health_check_interval_s,
        )

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def start(self) -> None:
        if self._closed or (self._task is not None and not self._task.done()):
            return
        self._task = asyncio.create_task(self._run(), name="broker-connection")

    def probe(self) -> None:
        """Restart the connect cycle if it gave up; otherwise do nothing."""

        if self._closed or self._state is not ConnectionState.ERRORED:
            return
        if self._task is not None and not self._task.done():
            return
        self.failures = 0
        self._transition(ConnectionState.CONNECTING)
        self._task = asyncio.create_task(self._run(), name="broker-connection")

    def report_failure(self, error: BaseException) -> None:
        """A client saw a transport error; re-check the connection right away."""

        if self._closed or self._state is not ConnectionState.READY:
            return
        self.last_error = error
        self._transition(ConnectionState.RECONNECTING, error)
        self._wake.set()

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def close(self) -> None:
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        try:
            await self.client.aclose()
        except TRANSPORT_ERRORS as exc:
            log.debug("error while closing broker client: %s", exc)
        self._transition(ConnectionState.DISCONNECTED)

    async def _run(self) -> None:
        while not self._closed:
            try:
                await asyncio.wait_for(self.client.ping(), timeout=self.connect_timeout_s)
            except TRANSPORT_ERRORS as exc:
                self.failures += 1
                self.last_error = exc
                if self.max_reconnect_attempts and self.failures >= self.max_reconnect_attempts:
                    self._transition(ConnectionState.ERRORED, exc)
                    return
                self._transition(ConnectionState.RECONNECTING, exc)
                await self._sleep(reconnect_delay(self.failures, self.reconnect_unit_s, self.reconnect_cap_s))
                continue

            self.failures = 0
            self.last_error = None
            self._wake.clear()
            self._transition(ConnectionState.READY)
            # Idle until the next health check or a client reports trouble.
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.health_check_interval_s)
            except asyncio.TimeoutError:
                pass

    def _transition(self, new: ConnectionState, error: Optional[BaseException] = None) -> None:
        old = self._state
        if new is old:
            return
        self._state = new
        if new is ConnectionState.READY:
            self._ready.set()
        else:
            self._ready.clear()

        log.log(
            _LEVELS[new],
            "broker connection %s -> %s",
            old.value,
            new.value,
            extra={
                "event": "broker_state",
                "state": new.value,
                "previous_state": old.value,
                "attempts": self.failures,
                "error": str(error) if error else None,
            },
        )
        record_broker_state(new)
        for listener in list(self._listeners):
            try:
                listener(old, new, error)
            except Exception:
                log.exception("connection listener failed", extra={"event": "listener_error"})
