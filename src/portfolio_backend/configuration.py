from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .utils import database_from_uri

load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"

PRODUCTION = "production"


@dataclass(frozen=True)
class StoreSettings:
    """Connection settings for the document store, read once per manager."""

    uri: str
    database: Optional[str]
    attempt_timeout: float
    probe_timeout: float
    client_options: Dict[str, Any] = field(default_factory=dict)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def make_runtime_config(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """Merge caller overrides onto the packaged defaults.

    Environment interpolations stay unresolved until a value is read, so every
    call observes the environment as it is at that moment.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    cli_config = OmegaConf.create(overrides or {})
    merged = DictConfig(OmegaConf.merge(base, cli_config))
    return merged


def get_config_container(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    config = make_runtime_config(overrides)
    return OmegaConf.to_container(config, resolve=True)  # type: ignore[return-value]


def load_store_settings(overrides: Optional[Dict[str, Any]] = None) -> Optional[StoreSettings]:
    """Return store settings, or None when no connection target is configured."""
    store = get_config_container(overrides)["store"]
    uri = (store.get("uri") or "").strip()
    if not uri:
        return None
    return StoreSettings(
        uri=uri,
        database=store.get("database") or database_from_uri(uri),
        attempt_timeout=float(store["attempt_timeout"]),
        probe_timeout=float(store["probe_timeout"]),
        client_options=dict(store.get("client_options") or {}),
    )


def get_environment(overrides: Optional[Dict[str, Any]] = None) -> str:
    return str(get_config_container(overrides)["app"]["environment"])


def is_production(overrides: Optional[Dict[str, Any]] = None) -> bool:
    return get_environment(overrides) == PRODUCTION


def allowed_origins(cors: Dict[str, Any]) -> List[str]:
    extra = [origin.strip() for origin in str(cors.get("extra_origins") or "").split(",")]
    return [*cors.get("origins", []), *[origin for origin in extra if origin]]
