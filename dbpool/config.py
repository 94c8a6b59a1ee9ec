"""
Connection pool configuration.

This module provides the immutable configuration snapshot used by the pool,
and the loaders that build it from a flat key/value mapping such as the
``db.<name>.<key>`` property layout.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError


# Property key -> PoolConfig field
PROPERTY_KEYS: Dict[str, str] = {
    "url": "url",
    "user": "user",
    "password": "password",
    "filter": "filters",
    "initialSize": "initial_size",
    "minIdle": "min_idle",
    "maxActive": "max_active",
    "maxWait": "max_wait_millis",
    "timeBetweenEvictionRunsMillis": "eviction_interval_millis",
    "minEvictableIdleTimeMillis": "min_evictable_idle_millis",
    "timeBetweenConnectErrorMillis": "reconnect_backoff_millis",
    "connectTimeoutMillis": "connect_timeout_millis",
    "validationQuery": "validation_query",
    "validationQueryTimeoutMillis": "validation_timeout_millis",
    "testOnBorrow": "validate_on_borrow",
    "testOnReturn": "validate_on_return",
    "testWhileIdle": "validate_while_idle",
    "borrowRetryLimit": "borrow_retry_limit",
    "removeAbandoned": "remove_abandoned",
    "removeAbandonedTimeoutMillis": "abandoned_timeout_millis",
    "logAbandoned": "log_abandoned",
    "maxPoolPreparedStatementPerConnectionSize": "max_cached_statements_per_connection",
    "shutdownGraceMillis": "shutdown_grace_millis",
}

REQUIRED_PROPERTIES = ("url", "user", "password")


@dataclass(frozen=True)
class Credentials:
    """Credentials handed to the connection factory."""

    user: str
    password: str = field(repr=False)


class PoolConfig(BaseModel):
    """Configuration for a connection pool."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field("default", description="Name of the data source, used in logs and metrics")

    # Endpoint and credentials
    url: str = Field(..., min_length=1, description="Endpoint of the database server")
    user: str = Field(..., min_length=1, description="User to authenticate as")
    password: str = Field(..., repr=False, description="Password for the user")

    # Pool size settings
    initial_size: int = Field(10, ge=0, description="Connections opened when the pool starts")
    min_idle: int = Field(10, ge=0, description="Idle connections kept by eviction and top-up")
    max_active: int = Field(100, ge=1, description="Upper bound on open connections, idle plus borrowed")

    # Timing settings
    max_wait_millis: int = Field(-1, ge=-1, description="Borrow timeout in milliseconds, -1 waits forever")
    eviction_interval_millis: int = Field(60000, ge=0, description="Period of the eviction sweep, 0 disables it")
    min_evictable_idle_millis: int = Field(1800000, ge=0, description="Idle time after which a connection may be evicted")
    reconnect_backoff_millis: int = Field(500, ge=0, description="Delay after a failed open attempt")
    connect_timeout_millis: int = Field(10000, ge=1, description="Timeout for opening a physical connection")

    # Validation settings
    validation_query: str = Field("select 1", description="Query used to probe a connection")
    validation_timeout_millis: int = Field(5000, ge=1, description="Timeout for a single probe")
    validate_on_borrow: bool = Field(False, description="Probe connections before handing them out")
    validate_on_return: bool = Field(False, description="Probe connections when they are returned")
    validate_while_idle: bool = Field(True, description="Probe idle connections during the sweep")
    borrow_retry_limit: int = Field(3, ge=1, description="Attempts a borrow makes before giving up on failed connections")

    # Leak detection settings
    remove_abandoned: bool = Field(False, description="Reclaim connections borrowed for too long")
    abandoned_timeout_millis: int = Field(300000, ge=0, description="Borrow time after which a connection is abandoned")
    log_abandoned: bool = Field(False, description="Log the borrower of reclaimed connections")

    # Additional settings
    max_cached_statements_per_connection: int = Field(10, description="Prepared statements cached per connection, 0 or less disables")
    shutdown_grace_millis: int = Field(5000, ge=0, description="Time shutdown waits for borrowed connections")
    filters: Tuple[str, ...] = Field((), description="Names of built-in observers to install")

    @field_validator("filters", mode="before")
    @classmethod
    def split_filters(cls, v: Any) -> Any:
        """Accept a comma separated string of observer names."""
        if v is None:
            return ()
        if isinstance(v, str):
            return tuple(part.strip() for part in v.split(",") if part.strip())
        return v

    @model_validator(mode="after")
    def check_bounds(self) -> "PoolConfig":
        """Validate the pool size bounds against each other."""
        if self.min_idle > self.max_active:
            raise ValueError(f"min_idle ({self.min_idle}) must be less than or equal to max_active ({self.max_active})")

        if self.initial_size > self.max_active:
            raise ValueError(f"initial_size ({self.initial_size}) must be less than or equal to max_active ({self.max_active})")

        return self

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "PoolConfig":
        """Create a configuration from a mapping of field names to values.

        String values are coerced to the field types, so ``"true"`` and
        ``"10"`` are accepted.

        Raises:
            ConfigurationError: If a field is missing or invalid
        """
        try:
            return cls(**dict(mapping))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'config'}: {error['msg']}"
                for error in e.errors()
            )
            raise ConfigurationError(
                f"Invalid pool configuration: {problems}",
                pool=str(mapping.get("name", "default"))
            ) from e

    @classmethod
    def from_properties(cls, properties: Mapping[str, Any], name: str = "default") -> "PoolConfig":
        """Create a configuration from ``db.<name>.<key>`` properties.

        Args:
            properties: Flat property mapping
            name: The data source name

        Raises:
            ConfigurationError: If url, user or password is missing, or a value is invalid
        """
        prefix = f"db.{name}."

        for key in REQUIRED_PROPERTIES:
            if properties.get(prefix + key) is None:
                raise ConfigurationError(f"Could not find database {key} for {prefix}{key}", pool=name)

        values: Dict[str, Any] = {"name": name}
        for key, field_name in PROPERTY_KEYS.items():
            value = properties.get(prefix + key)
            if value is not None:
                values[field_name] = value

        return cls.from_mapping(values)

    @property
    def credentials(self) -> Credentials:
        return Credentials(user=self.user, password=self.password)

    @property
    def max_wait(self) -> Optional[float]:
        """Borrow timeout in seconds, or None to wait forever."""
        if self.max_wait_millis < 0:
            return None
        return self.max_wait_millis / 1000.0

    @property
    def eviction_interval(self) -> float:
        return self.eviction_interval_millis / 1000.0

    @property
    def min_evictable_idle(self) -> float:
        return self.min_evictable_idle_millis / 1000.0

    @property
    def reconnect_backoff(self) -> float:
        return self.reconnect_backoff_millis / 1000.0

    @property
    def connect_timeout(self) -> float:
        return self.connect_timeout_millis / 1000.0

    @property
    def validation_timeout(self) -> float:
        return self.validation_timeout_millis / 1000.0

    @property
    def abandoned_timeout(self) -> float:
        return self.abandoned_timeout_millis / 1000.0

    @property
    def shutdown_grace(self) -> float:
        return self.shutdown_grace_millis / 1000.0
