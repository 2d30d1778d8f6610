from __future__ import annotations

from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import ConfigError, FetchError, StorageError, TransformError
from .post import NormalizedPost, NormalizedProfile
from .service import IngestionService

__all__ = [
    "AppConfig",
    "ConfigError",
    "FetchError",
    "IngestionService",
    "NormalizedPost",
    "NormalizedProfile",
    "StorageError",
    "TransformError",
    "config_sha256",
    "load_config",
    "resolve_runtime_secrets",
]
