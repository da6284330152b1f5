"""
Configuration management for MDB_ACCESS.

Configuration is a Pydantic model so values are type-checked and bounded on
construction. ``AccessLayerConfig.from_env()`` reads the same environment
variables the deployment sets; direct keyword construction works too.
"""

import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from .constants import (
    DEFAULT_MAX_POOL_SIZE,
    DEFAULT_MIN_POOL_SIZE,
    DEFAULT_OPERATION_TIMEOUT,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SERVER_SELECTION_TIMEOUT_MS,
    DEFAULT_TXN_BASE_DELAY,
    DEFAULT_TXN_JITTER,
    DEFAULT_TXN_MAX_DELAY,
    DEFAULT_TXN_MAX_DURATION,
    DEFAULT_TXN_MAX_RETRIES,
    MAX_PAGE_SIZE,
)
from .exceptions import ConfigurationError

# Environment variable -> field name
ENV_VARS: dict[str, str] = {
    "MONGO_URI": "mongo_uri",
    "DB_NAME": "db_name",
    "MONGO_MAX_POOL_SIZE": "max_pool_size",
    "MONGO_MIN_POOL_SIZE": "min_pool_size",
    "MONGO_SERVER_SELECTION_TIMEOUT_MS": "server_selection_timeout_ms",
    "MDB_ACCESS_DEFAULT_TIMEOUT": "default_timeout",
    "MDB_ACCESS_DEFAULT_PAGE_SIZE": "default_page_size",
    "MDB_ACCESS_MAX_PAGE_SIZE": "max_page_size",
    "MDB_ACCESS_TXN_MAX_RETRIES": "txn_max_retries",
    "MDB_ACCESS_TXN_BASE_DELAY": "txn_base_delay",
    "MDB_ACCESS_TXN_MAX_DELAY": "txn_max_delay",
    "MDB_ACCESS_TXN_JITTER": "txn_jitter",
    "MDB_ACCESS_TXN_MAX_DURATION": "txn_max_duration",
    "MDB_ACCESS_CURSOR_SECRET": "cursor_secret",
}


class AccessLayerConfig(BaseModel):
    """
    Access layer configuration.

    Example:
        # Using environment variables
        config = AccessLayerConfig.from_env()
        store = DocumentStore.from_config(config)

        # Or using direct parameters
        config = AccessLayerConfig(
            mongo_uri="mongodb://localhost:27017",
            db_name="shop",
            cursor_secret="change-me",
        )
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    mongo_uri: str = Field("", description="MongoDB connection URI")
    db_name: str = Field("", description="Database name")
    max_pool_size: int = Field(DEFAULT_MAX_POOL_SIZE, ge=1)
    min_pool_size: int = Field(DEFAULT_MIN_POOL_SIZE, ge=0)
    server_selection_timeout_ms: int = Field(DEFAULT_SERVER_SELECTION_TIMEOUT_MS, ge=1000)

    default_timeout: float = Field(
        DEFAULT_OPERATION_TIMEOUT,
        gt=0,
        description="Deadline for a single store round trip (seconds)",
    )
    default_page_size: int = Field(DEFAULT_PAGE_SIZE, ge=1)
    max_page_size: int = Field(MAX_PAGE_SIZE, ge=1)

    txn_max_retries: int = Field(DEFAULT_TXN_MAX_RETRIES, ge=0)
    txn_base_delay: float = Field(DEFAULT_TXN_BASE_DELAY, ge=0)
    txn_max_delay: float = Field(DEFAULT_TXN_MAX_DELAY, ge=0)
    txn_jitter: float = Field(DEFAULT_TXN_JITTER, ge=0, le=1)
    txn_max_duration: float = Field(DEFAULT_TXN_MAX_DURATION, gt=0)

    cursor_secret: str = Field(
        "",
        description="Key used to sign pagination cursors",
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "AccessLayerConfig":
        if self.min_pool_size > self.max_pool_size:
            raise ValueError(
                f"min_pool_size ({self.min_pool_size}) cannot be greater than "
                f"max_pool_size ({self.max_pool_size})"
            )
        if self.default_page_size > self.max_page_size:
            raise ValueError(
                f"default_page_size ({self.default_page_size}) cannot be greater than "
                f"max_page_size ({self.max_page_size})"
            )
        if self.txn_base_delay > self.txn_max_delay:
            raise ValueError(
                f"txn_base_delay ({self.txn_base_delay}) cannot be greater than "
                f"txn_max_delay ({self.txn_max_delay})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "AccessLayerConfig":
        """
        Build configuration from environment variables.

        Args:
            **overrides: Explicit values that win over the environment

        Returns:
            Validated configuration

        Raises:
            ConfigurationError: If a value is missing its type or out of bounds
        """
        values: dict[str, Any] = {}
        for env_name, field_name in ENV_VARS.items():
            raw = os.getenv(env_name)
            if raw is not None and raw != "":
                values[field_name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.build(**values)

    @classmethod
    def build(cls, **values: Any) -> "AccessLayerConfig":
        """Construct a config, converting Pydantic errors into ``ConfigurationError``."""
        try:
            return cls(**values)
        except PydanticValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            loc = first.get("loc") or ()
            key = str(loc[0]) if loc else None
            raise ConfigurationError(
                f"Invalid access layer configuration: {first.get('msg', str(e))}",
                config_key=key,
                config_value=values.get(key) if key else None,
            ) from e

    def require_connection(self) -> None:
        """
        Ensure connection settings are present.

        Raises:
            ConfigurationError: If mongo_uri or db_name is missing
        """
        if not self.mongo_uri:
            raise ConfigurationError(
                "mongo_uri is required (set MONGO_URI environment variable or pass directly)",
                config_key="mongo_uri",
            )
        if not self.db_name:
            raise ConfigurationError(
                "db_name is required (set DB_NAME environment variable or pass directly)",
                config_key="db_name",
            )
