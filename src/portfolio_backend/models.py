from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from .database import ConnectionState


class StoreHealth(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: ConnectionState
    is_connected: bool = Field(alias="isConnected")


class HealthResponse(BaseModel):
    message: str
    timestamp: str
    environment: str
    store: StoreHealth


class PingReport(BaseModel):
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: str


class ConnectionReport(BaseModel):
    status: Dict[str, Any]
    ping: PingReport


class StatusResponse(BaseModel):
    connection: ConnectionReport


class EnvironmentFlags(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_mongo_uri: bool = Field(alias="hasMongoUri")
    has_jwt_secret: bool = Field(alias="hasJwtSecret")
    has_cloudinary_name: bool = Field(alias="hasCloudinaryName")
    has_cloudinary_key: bool = Field(alias="hasCloudinaryKey")
    has_cloudinary_secret: bool = Field(alias="hasCloudinarySecret")


class EnvironmentReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    env_vars: EnvironmentFlags = Field(alias="envVars")


class DatabaseStats(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    database: str
    collections: int
    data_size: float = Field(alias="dataSize")
    index_size: float = Field(alias="indexSize")


class ErrorResponse(BaseModel):
    error: str
    message: str
    timestamp: str
    kind: Optional[str] = None
    details: Optional[str] = None
