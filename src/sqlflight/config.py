import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class FailurePolicy(str, Enum):
    """What an execution does when one of its endpoints fails."""

    FAIL_FAST = "fail_fast"
    BEST_EFFORT = "best_effort"


class Ordering(str, Enum):
    """Order in which batches of different endpoints are released to the caller."""

    COMPLETION = "completion"
    STRICT = "strict"


class LoggingSettings(BaseSettings):
    log_level: str = "INFO"
    log_format: str = "default"  # default, key_value or json
    log_config_file: Optional[str] = None
    model_config = SettingsConfigDict(env_prefix="SQLFLIGHT_LOGGING_")


class ClientSettings(BaseSettings):
    location: str = "grpc://localhost:52358"
    token: Optional[str] = None  # sent as "authorization: Bearer <token>"
    username: Optional[str] = None  # basic token handshake when both are set
    password: Optional[str] = None
    tls_root_certs_path: Optional[str] = None
    disable_server_verification: bool = False
    call_timeout: Optional[float] = None  # seconds, unary calls only
    headers: dict[str, str] = {}
    model_config = SettingsConfigDict(env_prefix="SQLFLIGHT_CLIENT_")


class ExecutionSettings(BaseSettings):
    concurrency: int = 4
    lookahead: int = 2
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    ordering: Ordering = Ordering.COMPLETION
    max_buffered_bytes: int = 64 * 1024 * 1024
    cancel_grace_period: float = 5.0
    model_config = SettingsConfigDict(env_prefix="SQLFLIGHT_EXECUTION_")


@dataclass(frozen=True)
class ExecutionConfig:
    """
    Configuration of a result aggregation.

    Attributes:
        concurrency: Maximum number of endpoint fetchers connected and pulling at once.
        lookahead: Number of decoded but undelivered batches a fetcher may hold before it
            stops reading from the network.
        failure_policy: FAIL_FAST aborts on the first endpoint error, BEST_EFFORT keeps the
            other endpoints running and reports failures at the end.
        ordering: COMPLETION interleaves endpoints as batches arrive, STRICT releases
            endpoints in declaration order.
        max_buffered_bytes: Memory budget for batches of endpoints that are not yet allowed
            to be released under STRICT ordering. When it is exhausted the faster
            endpoints are blocked, data is never dropped.
        cancel_grace_period: Seconds to wait for fetchers to stop after a cancellation.
    """

    concurrency: int = 4
    lookahead: int = 2
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    ordering: Ordering = Ordering.COMPLETION
    max_buffered_bytes: int = 64 * 1024 * 1024
    cancel_grace_period: float = 5.0

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.lookahead < 1:
            raise ValueError(f"lookahead must be at least 1, got {self.lookahead}")
        if self.max_buffered_bytes < 0:
            raise ValueError(f"max_buffered_bytes must not be negative, got {self.max_buffered_bytes}")

    @classmethod
    def create_default(cls) -> "ExecutionConfig":
        return cls()

    @classmethod
    def from_settings(cls, settings: Optional[ExecutionSettings] = None) -> "ExecutionConfig":
        """Build a config from environment-backed settings."""
        settings = settings or execution_settings
        return cls(
            concurrency=settings.concurrency,
            lookahead=settings.lookahead,
            failure_policy=FailurePolicy(settings.failure_policy),
            ordering=Ordering(settings.ordering),
            max_buffered_bytes=settings.max_buffered_bytes,
            cancel_grace_period=settings.cancel_grace_period,
        )

    def with_concurrency(self, concurrency: int) -> "ExecutionConfig":
        return dataclasses.replace(self, concurrency=concurrency)

    def with_failure_policy(self, policy: FailurePolicy) -> "ExecutionConfig":
        return dataclasses.replace(self, failure_policy=policy)

    def with_ordering(self, ordering: Ordering) -> "ExecutionConfig":
        return dataclasses.replace(self, ordering=ordering)

    def with_lookahead(self, lookahead: int) -> "ExecutionConfig":
        return dataclasses.replace(self, lookahead=lookahead)


# Global settings instances, loaded from environment variables or .env files.
logging_settings = LoggingSettings()
client_settings = ClientSettings()
execution_settings = ExecutionSettings()
