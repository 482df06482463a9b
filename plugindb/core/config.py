from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from plugindb.core.errors import ConfigurationError

SchemaAction = Literal["update", "none"]


class DatabaseConfig(BaseModel):
    """Immutable connection settings handed to the connection source.

    ``url`` may be a full SQLAlchemy URL (``sqlite:///plugin.db``) or, when
    ``dialect`` is given, just the location part (``localhost:5432/minecraft``).
    ``dialect`` and ``driver`` override the backend and DBAPI parts of the URL.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    driver: Optional[str] = None
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    dialect: Optional[str] = None

    def missing_fields(self) -> list[str]:
        missing: list[str] = []
        raw = (self.url or "").strip()
        if not raw:
            missing.append("url")
        elif "://" not in raw and not (self.dialect or "").strip():
            missing.append("dialect")
        return missing

    def to_url(self) -> URL:
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                f"Database configuration is missing: {', '.join(missing)}",
                detail={"missing": missing},
            )
        raw = (self.url or "").strip()
        if "://" not in raw:
            raw = f"{self.dialect}://{raw}"
        try:
            url = make_url(raw)
        except ArgumentError as exc:
            raise ConfigurationError(
                "Database url could not be parsed",
                detail={"url": raw},
            ) from exc

        url_backend, _, url_driver = url.drivername.partition("+")
        backend = (self.dialect or url_backend).strip()
        driver = (self.driver or url_driver).strip()
        overrides: dict[str, Any] = {
            "drivername": f"{backend}+{driver}" if driver else backend,
        }
        # SQLite URLs reject credentials
        if backend != "sqlite":
            if self.username:
                overrides["username"] = self.username
            if self.password:
                overrides["password"] = self.password
        return url.set(**overrides)

    def masked_url(self) -> str:
        return self.to_url().render_as_string(hide_password=True)


class PoolSettings(BaseModel):
    """Connection pool tuning; camelCase keys are accepted from mappings."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )

    min_size: int = Field(default=5, ge=0, le=500, description="Connections kept open in the pool")
    max_size: int = Field(default=20, ge=1, le=1000, description="Upper bound of open connections")
    acquire_increment: int = Field(default=5, ge=1, description="Connections opened together when warming the pool")
    timeout_seconds: float = Field(default=600, gt=0, description="Seconds to wait for a pooled connection")
    pre_ping: bool = Field(default=True, description="Check connection liveness on checkout")
    recycle_seconds: int = Field(default=1800, ge=-1, description="Seconds before recycling a connection, -1 disables")

    @model_validator(mode="after")
    def _check_bounds(self) -> "PoolSettings":
        if self.max_size < self.min_size:
            raise ValueError("max_size must be greater than or equal to min_size")
        return self

    @property
    def core_size(self) -> int:
        # QueuePool reads pool_size=0 as "no limit"
        return max(self.min_size, 1)

    @property
    def max_overflow(self) -> int:
        return self.max_size - self.core_size

    @classmethod
    def coerce(cls, value: "PoolSettings | Mapping[str, Any] | None") -> "PoolSettings":
        """Accept an instance, a mapping of options or ``None`` (defaults)."""

        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        try:
            return cls.model_validate(dict(value))
        except ValidationError as exc:
            raise ConfigurationError(
                "Invalid connection pool settings",
                detail={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
        except (TypeError, ValueError) as exc:
            raise ConfigurationError("Pool settings must be a mapping") from exc


class Settings(BaseSettings):
    """Environment-sourced settings for hosts embedding the data layer."""

    model_config = SettingsConfigDict(
        env_prefix="PLUGINDB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["dev", "test", "staging", "prod"] = Field(default="dev")
    log_level: str = Field(default="INFO")

    db_url: Optional[str] = Field(default=None)
    db_dialect: Optional[str] = Field(default=None)
    db_driver: Optional[str] = Field(default=None)
    db_username: Optional[str] = Field(default=None)
    db_password: Optional[str] = Field(default=None)

    # Connection pool
    db_pool_min_size: int = Field(default=5, ge=0, le=500)
    db_pool_max_size: int = Field(default=20, ge=1, le=1000)
    db_pool_acquire_increment: int = Field(default=5, ge=1)
    db_pool_timeout_seconds: float = Field(default=600, gt=0)
    db_pool_pre_ping: bool = Field(default=True)
    db_pool_recycle_seconds: int = Field(default=1800, ge=-1)

    db_schema_action: SchemaAction = Field(default="update")
    db_echo: bool = Field(default=False)

    instrumentation_enabled: bool = Field(default=True)

    def database_config(self) -> DatabaseConfig:
        return DatabaseConfig(
            driver=self.db_driver,
            url=self.db_url,
            username=self.db_username,
            password=self.db_password,
            dialect=self.db_dialect,
        )

    def pool_settings(self) -> PoolSettings:
        return PoolSettings.coerce(
            {
                "min_size": self.db_pool_min_size,
                "max_size": self.db_pool_max_size,
                "acquire_increment": self.db_pool_acquire_increment,
                "timeout_seconds": self.db_pool_timeout_seconds,
                "pre_ping": self.db_pool_pre_ping,
                "recycle_seconds": self.db_pool_recycle_seconds,
            }
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
