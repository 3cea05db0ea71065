"""
Process-wide lifecycle management for the document store connection.

Request handlers run as short-lived, concurrently invoked tasks that share a
single event loop, so the store connection cannot be opened once at startup
and held forever. Instead every request asks the ConnectionManager for a
handle and the manager guarantees that:

- a live connection is reused without any I/O on the warm path
- at most one connect sequence (open + ping) is in flight at a time; every
  concurrent caller awaits the same PendingAttempt
- failures are classified into an ErrorKind and always leave the manager in
  the ``disconnected`` state, so the next caller can try again
- shutdown() tears the connection down in order and fails any pending attempt
  instead of leaving its waiters hanging

State mutations never straddle an ``await``: the transition to ``connecting``
and the installation of the PendingAttempt happen synchronously before the
first suspension point.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pymongo.errors import OperationFailure

from .configuration import StoreSettings, load_store_settings
from .transport import MotorTransport, StoreTransport
from .utils import describe_host

logger = logging.getLogger(__name__)

# Database used when neither MONGODB_DATABASE nor the URI path names one.
DEFAULT_DATABASE = "test"

AUTHENTICATION_FAILED_CODE = 18


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class ErrorKind(str, Enum):
    CONFIGURATION_MISSING = "configuration_missing"
    DNS_RESOLUTION_FAILURE = "dns_resolution_failure"
    AUTHENTICATION_FAILURE = "authentication_failure"
    NETWORK_TIMEOUT = "network_timeout"
    ACCESS_DENIED = "access_denied"
    UNKNOWN = "unknown"


OPERATOR_HINTS: Dict[ErrorKind, str] = {
    ErrorKind.CONFIGURATION_MISSING: "Set MONGODB_URI to the store's connection string",
    ErrorKind.DNS_RESOLUTION_FAILURE: "DNS resolution failed - check the hostname in MONGODB_URI",
    ErrorKind.AUTHENTICATION_FAILURE: "Authentication failed - check the username and password",
    ErrorKind.NETWORK_TIMEOUT: "Connection timeout - check network connectivity and firewall settings",
    ErrorKind.ACCESS_DENIED: "Connection rejected - add this host's IP to the cluster network access list",
    ErrorKind.UNKNOWN: "Check MONGODB_URI and the cluster settings",
}

_DNS_MARKERS = ("enotfound", "getaddrinfo", "name or service not known", "nodename nor servname", "dns")
_AUTH_MARKERS = ("authentication failed", "bad auth", "auth failed")
_ACCESS_MARKERS = (
    "whitelist",
    "allowlist",
    "ip address",
    "not allowed to access",
    "connection refused",
    "connection reset",
)
_TIMEOUT_MARKERS = ("timed out", "timeout")


class StoreConnectionError(RuntimeError):
    """Raised when the store cannot be reached; carries a classified ErrorKind."""

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        # A missing target will not appear until the configuration changes.
        return self.kind is not ErrorKind.CONFIGURATION_MISSING

    @property
    def hint(self) -> str:
        return OPERATOR_HINTS[self.kind]


def classify_error(exc: BaseException) -> StoreConnectionError:
    """
    Map a failure raised during the connect/probe sequence to an ErrorKind.

    DNS, authentication and access rules are checked before the generic
    timeout rule because server selection errors always report a timeout
    next to the underlying cause.
    """
    if isinstance(exc, StoreConnectionError):
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return StoreConnectionError(ErrorKind.NETWORK_TIMEOUT, message)
    if isinstance(exc, socket.gaierror) or any(marker in lowered for marker in _DNS_MARKERS):
        return StoreConnectionError(ErrorKind.DNS_RESOLUTION_FAILURE, message)
    if (isinstance(exc, OperationFailure) and exc.code == AUTHENTICATION_FAILED_CODE) or any(
        marker in lowered for marker in _AUTH_MARKERS
    ):
        return StoreConnectionError(ErrorKind.AUTHENTICATION_FAILURE, message)
    if any(marker in lowered for marker in _ACCESS_MARKERS):
        return StoreConnectionError(ErrorKind.ACCESS_DENIED, message)
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return StoreConnectionError(ErrorKind.NETWORK_TIMEOUT, message)
    return StoreConnectionError(ErrorKind.UNKNOWN, message)


class StoreHandle:
    """
    Reference to the live store connection.

    Route handlers use ``database`` to issue operations. Only the
    ConnectionManager may release the handle; afterwards it is invalid.
    """

    def __init__(self, client: Any, database: Any, host: Optional[str]):
        self._client = client
        self._database = database
        self.host = host
        self._released = False

    @property
    def valid(self) -> bool:
        return not self._released

    @property
    def database(self) -> Any:
        if self._released:
            raise StoreConnectionError(ErrorKind.UNKNOWN, "Store handle was released by shutdown")
        return self._database

    def _release(self) -> Any:
        self._released = True
        return self._client


class PendingAttempt:
    """The single shared outcome of one connect sequence."""

    def __init__(self) -> None:
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.waiters = 0
        # Client opened by this attempt but not yet handed over to a StoreHandle.
        self.client: Any = None

    @property
    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> StoreHandle:
        self.waiters += 1
        try:
            # Shielded: one cancelled waiter must not cancel the attempt for the rest.
            return await asyncio.shield(self._future)
        finally:
            self.waiters -= 1

    def resolve(self, handle: StoreHandle) -> None:
        if not self._future.done():
            self._future.set_result(handle)

    def reject(self, error: StoreConnectionError) -> None:
        if self._future.done():
            return
        self._future.set_exception(error)
        if not self.waiters:
            self._future.exception()


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState
    host: Optional[str]
    database: Optional[str]
    is_healthy: bool
    waiters: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data


TransitionListener = Callable[[ConnectionState, ConnectionState, Optional[StoreConnectionError]], None]


class ConnectionManager:
    """
    Owner of the single process-wide store connection.

    Construct one per process and pass it to the RequestGate. Tests inject a
    fake StoreTransport and settings loader instead of a real MongoDB.

    Attributes:
        attempt_count: Number of connect sequences started so far
    """

    def __init__(
        self,
        transport: Optional[StoreTransport] = None,
        *,
        settings_loader: Callable[[], Optional[StoreSettings]] = load_store_settings,
    ) -> None:
        self._transport = transport or MotorTransport()
        self._settings_loader = settings_loader
        self._settings: Optional[StoreSettings] = None
        self._state = ConnectionState.DISCONNECTED
        self._handle: Optional[StoreHandle] = None
        self._pending: Optional[PendingAttempt] = None
        self._attempt_task: Optional[asyncio.Task] = None
        self._closing: Optional[asyncio.Future] = None
        self._listeners: List[TransitionListener] = []
        self.attempt_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a transition listener; returns an unsubscribe handle."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def ensure_connected(self) -> StoreHandle:
        """Return the live handle, connecting first if needed."""
        handle = self._handle
        if self._state is ConnectionState.CONNECTED and handle is not None and handle.valid:
            logger.debug("Using existing store connection")
            return handle

        if self._state is ConnectionState.DISCONNECTING:
            raise StoreConnectionError(ErrorKind.UNKNOWN, "Store connection is shutting down")

        if self._pending is not None:
            logger.info("Store connection in progress, waiting (%d already waiting)", self._pending.waiters)
            return await self._pending.wait()

        return await self._start_attempt().wait()

    def status(self) -> ConnectionStatus:
        settings = self._settings
        return ConnectionStatus(
            state=self._state,
            host=describe_host(settings.uri) if settings else None,
            database=(settings.database or DEFAULT_DATABASE) if settings else None,
            is_healthy=self._state is ConnectionState.CONNECTED and self._handle is not None and self._handle.valid,
            waiters=self._pending.waiters if self._pending else 0,
        )

    async def probe(self) -> Dict[str, Any]:
        """Round-trip a ping on the live connection without changing state."""
        handle = self._handle
        if self._state is not ConnectionState.CONNECTED or handle is None or self._settings is None:
            raise StoreConnectionError(ErrorKind.UNKNOWN, f"Store is {self._state.value}")
        try:
            return await asyncio.wait_for(self._transport.ping(handle._client), timeout=self._settings.probe_timeout)
        except asyncio.TimeoutError as exc:
            raise StoreConnectionError(
                ErrorKind.NETWORK_TIMEOUT, f"Liveness probe timed out after {self._settings.probe_timeout:g}s"
            ) from exc
        except Exception as exc:
            raise classify_error(exc) from exc

    async def shutdown(self) -> None:
        """
        Close the connection and return to ``disconnected``.

        Safe to call repeatedly and while an attempt is in flight; that
        attempt's waiters are rejected rather than left waiting. If closing
        the client raises, the state still ends ``disconnected`` and the
        error propagates.
        """
        if self._state is ConnectionState.DISCONNECTED:
            logger.debug("Store already disconnected")
            return
        if self._closing is not None:
            await asyncio.shield(self._closing)
            return

        self._closing = asyncio.get_running_loop().create_future()
        attempt, task, handle = self._pending, self._attempt_task, self._handle
        self._pending = None
        self._attempt_task = None
        self._handle = None
        client = handle._release() if handle is not None else None
        self._transition(ConnectionState.DISCONNECTING)

        try:
            if attempt is not None:
                attempt.reject(StoreConnectionError(ErrorKind.UNKNOWN, "Connection attempt aborted by shutdown"))
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            if client is not None:
                await self._transport.close(client)
        finally:
            self._transition(ConnectionState.DISCONNECTED)
            closing, self._closing = self._closing, None
            closing.set_result(None)
        logger.info("Store connection closed")

    def _resolve_settings(self) -> StoreSettings:
        if self._settings is None:
            settings = self._settings_loader()
            if settings is None:
                error = StoreConnectionError(
                    ErrorKind.CONFIGURATION_MISSING, "MONGODB_URI environment variable is not set"
                )
                logger.error("Store connection not attempted: %s (%s)", error.message, error.hint)
                raise error
            self._settings = settings
        return self._settings

    def _start_attempt(self) -> PendingAttempt:
        settings = self._resolve_settings()
        attempt = PendingAttempt()
        self._pending = attempt
        self.attempt_count += 1
        self._transition(ConnectionState.CONNECTING)
        self._attempt_task = asyncio.ensure_future(self._run_attempt(attempt, settings))
        return attempt

    async def _run_attempt(self, attempt: PendingAttempt, settings: StoreSettings) -> None:
        host = describe_host(settings.uri)
        logger.info("Attempting store connection to %s", host)
        try:
            client = await asyncio.wait_for(self._open_and_ping(attempt, settings), timeout=settings.attempt_timeout)
        except asyncio.CancelledError:
            # Under shutdown() the attempt is already detached; any other
            # cancellation must still release the waiters and the state.
            if self._pending is attempt:
                self._pending = None
                self._attempt_task = None
                error = StoreConnectionError(ErrorKind.UNKNOWN, "Connection attempt cancelled")
                self._transition(ConnectionState.DISCONNECTED, error)
                logger.warning("Store connection attempt to %s was cancelled", host)
                attempt.reject(error)
            await self._discard_client(attempt)
            raise
        except asyncio.TimeoutError:
            await self._fail_attempt(
                attempt,
                StoreConnectionError(
                    ErrorKind.NETWORK_TIMEOUT, f"Store connection timed out after {settings.attempt_timeout:g}s"
                ),
            )
            return
        except Exception as exc:
            await self._fail_attempt(attempt, classify_error(exc))
            return

        if self._pending is not attempt:
            await self._discard_client(attempt)
            return

        attempt.client = None
        database = self._transport.get_database(client, settings.database or DEFAULT_DATABASE)
        handle = StoreHandle(client, database, host)
        self._handle = handle
        self._pending = None
        self._attempt_task = None
        self._transition(ConnectionState.CONNECTED)
        logger.info("Connected to store at %s (ping successful)", host)
        attempt.resolve(handle)

    async def _fail_attempt(self, attempt: PendingAttempt, error: StoreConnectionError) -> None:
        if self._pending is attempt:
            self._pending = None
            self._attempt_task = None
            self._transition(ConnectionState.DISCONNECTED, error)
        logger.error("Store connection failed [%s]: %s", error.kind.value, error.message)
        logger.error(error.hint)
        attempt.reject(error)
        await self._discard_client(attempt)

    async def _open_and_ping(self, attempt: PendingAttempt, settings: StoreSettings) -> Any:
        attempt.client = await self._transport.open(settings)
        await self._transport.ping(attempt.client)
        return attempt.client

    async def _discard_client(self, attempt: PendingAttempt) -> None:
        client, attempt.client = attempt.client, None
        if client is None:
            return
        try:
            await self._transport.close(client)
        except Exception:
            logger.warning("Failed to close half-open store client", exc_info=True)

    def _transition(self, new_state: ConnectionState, error: Optional[StoreConnectionError] = None) -> None:
        previous = self._state
        if previous is new_state:
            return
        self._state = new_state
        logger.info("Store connection state: %s -> %s", previous.value, new_state.value)
        for listener in tuple(self._listeners):
            try:
                listener(previous, new_state, error)
            except Exception:
                logger.exception("Store transition listener failed")
