"""Runtime settings for the reliability pipeline.

Every value can be supplied through an ``ORDERRELAY_``-prefixed environment
variable or a ``.env`` file, e.g. ``ORDERRELAY_SEND_TIMEOUT=PT2.5S`` or
``ORDERRELAY_MAX_BACKOFF=PT10M``. Durations are ISO-8601 in the environment.
"""

from datetime import timedelta

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelaySettings(BaseSettings):
    """Settings consumed by the Dispatcher, RetryScheduler and IngestionConsumer.

    Attributes:
        incoming_topic: Topic carrying OrderMessages, keyed by store_id.
        created_topic: Topic carrying OrderCreated events, keyed by store_id.
        send_timeout: How long a synchronous publish may wait for the broker.
        sweep_interval: Delay between the end of one retry sweep and the next.
        max_attempts: Records with this many failed redrives are no longer selected.
        initial_backoff: Backoff base for the first failed redrive.
        max_backoff: Backoff cap.
        batch_size: Maximum records redriven per sweep.
        claim_lease: How long a scheduler instance holds a claimed record. Renewed
            before each redrive, so it only has to outlast one send.
        consumer_pull_timeout: Broker pull timeout in the consumer loop.
        max_consecutive_pull_failures: Consumer circuit-breaker threshold.
        stack_trace_limit: Maximum characters kept in a dead-letter stack trace.
    """

    model_config = SettingsConfigDict(
        env_prefix="ORDERRELAY_",
        env_file=".env",
        extra="ignore",
    )

    incoming_topic: str = Field(default="orders.incoming", min_length=1)
    created_topic: str = Field(default="orders.created", min_length=1)

    send_timeout: timedelta = timedelta(seconds=5)
    sweep_interval: timedelta = timedelta(seconds=5)
    max_attempts: int = Field(default=100, ge=1)
    initial_backoff: timedelta = timedelta(seconds=5)
    max_backoff: timedelta = timedelta(minutes=5)
    batch_size: int = Field(default=100, ge=1)
    claim_lease: timedelta = timedelta(seconds=60)

    consumer_pull_timeout: float = Field(default=1.0, gt=0)
    max_consecutive_pull_failures: int = Field(default=10, ge=1)
    stack_trace_limit: int = Field(default=4000, ge=100)

    redis_url: str = "redis://localhost:6379"
    database_url: str = "sqlite+aiosqlite:///orderrelay.db"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def check_durations(self) -> "RelaySettings":
        for name in ("send_timeout", "sweep_interval", "claim_lease"):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"{name} must be positive")
        if self.initial_backoff < timedelta(0):
            raise ValueError("initial_backoff must be non-negative")
        if self.max_backoff < self.initial_backoff:
            raise ValueError("max_backoff must be >= initial_backoff")
        if self.claim_lease <= self.send_timeout:
            raise ValueError("claim_lease must be longer than send_timeout")
        return self
