import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

from marketplace_jobs.domain.errors import ConfigurationError
from marketplace_jobs.domain.queues import QUEUE_CONFIG, QUEUE_NAMES, QueueName
from marketplace_jobs.domain.retry import RetryPolicy
from marketplace_jobs.settings import Settings, settings as default_settings

@dataclass(frozen=True)
class RateLimit:
    max_jobs: int
    per_seconds: float

    @classmethod
    def parse(cls, raw: str) -> "RateLimit":
        """Parses "N/SECONDS", e.g. "10/60" for ten dequeues per minute."""
        try:
            count, _, window = raw.partition("/")
            limit = cls(max_jobs=int(count), per_seconds=float(window))
        except ValueError as e:
            raise ConfigurationError(f"Invalid rate limit {raw!r}, expected N/SECONDS") from e
        if limit.max_jobs < 1 or limit.per_seconds <= 0:
            raise ConfigurationError(f"Invalid rate limit {raw!r}, both parts must be positive")
        return limit

@dataclass(frozen=True)
class WorkerConfig:
    """Everything a consumer needs to serve one queue."""
    queue: QueueName
    concurrency: int
    rate_limit: Optional[RateLimit]
    retry_policy: RetryPolicy
    timeout_seconds: Optional[float] = None

def parse_queue_list(raw: str) -> list[QueueName]:
    names = [name.strip().lower() for name in raw.split(",") if name.strip()]
    if not names:
        return list(QueueName)
    unknown = [name for name in names if name not in QUEUE_NAMES]
    if unknown:
        raise ConfigurationError(f"Unknown queue(s) in WORKER_QUEUES: {', '.join(unknown)}")
    # Keep order, drop repeats
    return [QueueName(name) for name in dict.fromkeys(names)]

def build_worker_configs(
    settings: Settings = default_settings,
    environ: Optional[Mapping[str, str]] = None,
) -> list[WorkerConfig]:
    """
    Builds one WorkerConfig per queue this process serves.

    WORKER_QUEUES (comma list, empty = all queues) picks the queues;
    CONCURRENCY_<QUEUE> and RATE_LIMIT_<QUEUE> override the defaults per
    queue. Any invalid value is a startup error.
    """
    environ = os.environ if environ is None else environ
    configs = []
    for queue in parse_queue_list(settings.WORKER_QUEUES):
        queue_config = QUEUE_CONFIG[queue]
        suffix = queue.value.upper()

        raw_concurrency = environ.get(f"CONCURRENCY_{suffix}")
        if raw_concurrency:
            try:
                concurrency = int(raw_concurrency)
            except ValueError as e:
                raise ConfigurationError(f"CONCURRENCY_{suffix} must be an integer, got {raw_concurrency!r}") from e
        else:
            concurrency = queue_config.default_concurrency or settings.DEFAULT_CONCURRENCY
        if concurrency < 1:
            raise ConfigurationError(f"CONCURRENCY_{suffix} must be at least 1")

        raw_rate = environ.get(f"RATE_LIMIT_{suffix}")
        rate_limit = RateLimit.parse(raw_rate) if raw_rate else None

        configs.append(WorkerConfig(
            queue=queue,
            concurrency=concurrency,
            rate_limit=rate_limit,
            retry_policy=queue_config.retry_policy,
            timeout_seconds=queue_config.timeout_seconds,
        ))
    return configs
