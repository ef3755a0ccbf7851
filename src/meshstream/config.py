"""Configuration models for meshstream."""

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_STREAM_URL = "http://localhost:8080/api/stream"


class ReconnectPolicy(BaseModel):
    """Exponential backoff policy for stream reconnection."""

    model_config = ConfigDict(frozen=True)

    initial_delay_ms: int = Field(1000, gt=0, description="Delay before the first reconnect")
    max_delay_ms: int = Field(30000, gt=0, description="Upper bound for any single delay")
    max_attempts: int = Field(30, ge=1, description="Consecutive failures before giving up")

    @model_validator(mode="after")
    def _check_bounds(self) -> "ReconnectPolicy":
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self

    def delay_for(self, attempt: int) -> int:
        """Return the reconnect delay in milliseconds for a zero-based attempt.

        Args:
            attempt: Number of failures already seen before this one

        Returns:
            ``min(initial_delay * 2**attempt, max_delay)``
        """
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # Cap the exponent so very large attempt counts stay cheap
        if attempt >= 63:
            return self.max_delay_ms
        return min(self.initial_delay_ms * (2**attempt), self.max_delay_ms)


class StreamConfig(BaseModel):
    """Settings for a stream client session."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(DEFAULT_STREAM_URL, description="Server-sent events endpoint")
    policy: ReconnectPolicy = Field(default_factory=ReconnectPolicy)
    read_timeout: float | None = Field(
        90.0, gt=0, description="Seconds without data before the connection is considered dead"
    )
    connect_timeout: float | None = Field(30.0, gt=0, description="Seconds allowed to open the stream")
    log_size: int = Field(100, ge=1, description="Capacity of the live packet feed")
