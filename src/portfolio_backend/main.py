from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .configuration import PRODUCTION, allowed_origins, get_config_container, load_store_settings
from .database import ConnectionManager, StoreConnectionError, StoreHandle
from .gate import RequestGate, get_request_gate, require_store
from .lifecycle import terminate
from .middleware import error_response, install_error_handling
from .models import (
    DatabaseStats,
    EnvironmentFlags,
    EnvironmentReport,
    ErrorResponse,
    HealthResponse,
    StatusResponse,
    StoreHealth,
)
from .utils import utc_timestamp

logger = logging.getLogger(__name__)

router = APIRouter()

# Every route on this router runs behind the request gate.
api_router = APIRouter(
    prefix="/api",
    dependencies=[Depends(require_store)],
    responses={503: {"model": ErrorResponse}},
)


def get_connection_manager(request: Request) -> ConnectionManager:
    return request.app.state.connection_manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager: ConnectionManager = app.state.connection_manager
    if app.state.warm_start:
        try:
            await manager.ensure_connected()
        except StoreConnectionError as exc:
            logger.error("Server will continue without database connection: %s", exc.message)
    try:
        yield
    finally:
        app.state.exit_code = await terminate(manager)


@router.get("/health", response_model=HealthResponse)
def healthcheck(request: Request, manager: ConnectionManager = Depends(get_connection_manager)) -> HealthResponse:
    status = manager.status()
    return HealthResponse(
        message=f"{request.app.title} is running!",
        timestamp=utc_timestamp(),
        environment=request.app.state.environment,
        store=StoreHealth(status=status.state, is_connected=status.is_healthy),
    )


@router.get("/status", response_model=StatusResponse, responses={500: {"model": ErrorResponse}})
async def connection_status(gate: RequestGate = Depends(get_request_gate)):
    try:
        report = await gate.diagnostics()
        return report.to_dict()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to assemble connection status")
        return error_response(
            500,
            ErrorResponse(error="Failed to read connection status", message=str(exc), timestamp=utc_timestamp()),
        )


@router.get("/api/test", response_model=EnvironmentReport)
def environment_check() -> EnvironmentReport:
    return EnvironmentReport(
        message="Test endpoint working",
        env_vars=EnvironmentFlags(
            has_mongo_uri=bool(os.environ.get("MONGODB_URI")),
            has_jwt_secret=bool(os.environ.get("JWT_SECRET")),
            has_cloudinary_name=bool(os.environ.get("CLOUDINARY_CLOUD_NAME")),
            has_cloudinary_key=bool(os.environ.get("CLOUDINARY_API_KEY")),
            has_cloudinary_secret=bool(os.environ.get("CLOUDINARY_API_SECRET")),
        ),
    )


@api_router.get("/stats", response_model=DatabaseStats)
async def database_stats(store: StoreHandle = Depends(require_store)) -> DatabaseStats:
    stats = await store.database.command("dbStats")
    return DatabaseStats(
        database=stats["db"],
        collections=stats.get("collections", 0),
        data_size=stats.get("dataSize", 0),
        index_size=stats.get("indexSize", 0),
    )


def create_app(
    manager: Optional[ConnectionManager] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> FastAPI:
    config = get_config_container(overrides)
    app_config, cors = config["app"], config["cors"]

    app = FastAPI(title=app_config["title"], version=app_config["version"], lifespan=lifespan)

    if manager is None:
        manager = ConnectionManager(settings_loader=lambda: load_store_settings(overrides))
    app.state.connection_manager = manager
    app.state.request_gate = RequestGate(manager)
    app.state.environment = app_config["environment"]
    app.state.expose_details = app_config["environment"] != PRODUCTION
    app.state.warm_start = bool(app_config["warm_start"])
    app.state.exit_code = 0

    install_error_handling(app)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins(cors),
        allow_origin_regex=cors["origin_regex"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "x-csrf-token"],
        max_age=86400,
    )

    app.include_router(router)
    app.include_router(api_router)
    return app


app = create_app()
