"""
Request gate: a live store connection as a precondition for every request.

The gate calls ConnectionManager.ensure_connected() before a route handler
runs and turns a StoreConnectionError into a GateError, which the app renders
as HTTP 503. Only connection readiness is checked here; whatever the route
handler raises afterwards goes through the normal exception handling.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, Request

from .database import ConnectionManager, ConnectionState, ConnectionStatus, ErrorKind, StoreConnectionError, StoreHandle
from .utils import utc_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateError:
    kind: ErrorKind
    message: str
    timestamp: str


class ServiceUnavailable(Exception):
    """Raised by the ``require_store`` dependency when the gate rejects a request."""

    def __init__(self, error: GateError):
        super().__init__(error.message)
        self.error = error


@dataclass(frozen=True)
class DiagnosticsReport:
    status: ConnectionStatus
    ping_result: Optional[Dict[str, Any]]
    ping_error: Optional[str]
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection": {
                "status": self.status.to_dict(),
                "ping": {
                    "result": self.ping_result,
                    "error": self.ping_error,
                    "timestamp": self.timestamp,
                },
            }
        }


class RequestGate:
    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    async def admit(self, request: Any = None) -> Optional[GateError]:
        """
        Ensure the store is connected before the route handler runs.

        On success the handle is attached to ``request.state.store`` and None
        is returned. On failure a GateError carrying the classified kind is
        returned instead of raising.
        """
        try:
            handle = await self.manager.ensure_connected()
        except StoreConnectionError as exc:
            logger.warning("Request rejected, store unavailable [%s]: %s", exc.kind.value, exc.message)
            return GateError(kind=exc.kind, message=exc.message, timestamp=utc_timestamp())

        if request is not None:
            request.state.store = handle
        return None

    async def diagnostics(self) -> DiagnosticsReport:
        """Current status plus a best-effort ping; never connects and never raises on probe failure."""
        status = self.manager.status()
        result: Optional[Dict[str, Any]] = None
        error: Optional[str] = None

        if status.state is ConnectionState.CONNECTED:
            try:
                reply = await self.manager.probe()
                # Replica set replies carry BSON timestamps; only "ok" is reported.
                result = {"ok": reply.get("ok")}
            except StoreConnectionError as exc:
                error = exc.message
        else:
            error = f"Store is {status.state.value}"

        return DiagnosticsReport(status=status, ping_result=result, ping_error=error, timestamp=utc_timestamp())


def get_request_gate(request: Request) -> RequestGate:
    return request.app.state.request_gate


async def require_store(request: Request, gate: RequestGate = Depends(get_request_gate)) -> StoreHandle:
    error = await gate.admit(request)
    if error is not None:
        raise ServiceUnavailable(error)
    return request.state.store
