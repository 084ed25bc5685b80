"""Runtime configuration for the dispatch services.

Every value can be overridden through an environment variable so the same
image runs as the API, a single worker service, or everything in one process.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_DATABASE_URL = "sqlite:///./concrete_fleet.db"
DEFAULT_BROKER_URL = "memory://"


class SimulationTiming(BaseModel):
    """Base phase durations (seconds) and how they are randomized."""

    loading_seconds: float = Field(15.0, ge=0)
    delivery_seconds: float = Field(15.0, ge=0)
    washing_seconds: float = Field(10.0, ge=0)
    seconds_per_mile: float = Field(2.0, ge=0)
    jitter: float = Field(0.2, ge=0, lt=1)
    time_scale: float = Field(1.0, ge=0)


class Settings(BaseModel):
    database_url: str = DEFAULT_DATABASE_URL
    broker_url: str = DEFAULT_BROKER_URL
    redis_stream_prefix: str = "concrete-fleet"
    environment: str = "development"
    log_level: Optional[str] = None
    reconcile_interval_seconds: float = Field(30.0, gt=0)
    redelivery_delay_seconds: float = Field(1.0, ge=0)
    run_workers_in_process: Optional[bool] = None
    timing: SimulationTiming = Field(default_factory=SimulationTiming)

    @property
    def uses_memory_broker(self) -> bool:
        return self.broker_url.startswith("memory://")

    @property
    def workers_in_process(self) -> bool:
        # The in-memory broker cannot reach other processes, so the API has to
        # host the workers itself unless told otherwise.
        if self.run_workers_in_process is None:
            return self.uses_memory_broker
        return self.run_workers_in_process

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        timing = SimulationTiming(
            loading_seconds=float(env.get("SIM_LOADING_SECONDS", 15.0)),
            delivery_seconds=float(env.get("SIM_DELIVERY_SECONDS", 15.0)),
            washing_seconds=float(env.get("SIM_WASHING_SECONDS", 10.0)),
            seconds_per_mile=float(env.get("SIM_SECONDS_PER_MILE", 2.0)),
            jitter=float(env.get("SIM_JITTER", 0.2)),
            time_scale=float(env.get("SIM_TIME_SCALE", 1.0)),
        )
        in_process = env.get("RUN_WORKERS_IN_PROCESS")
        return cls(
            database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
            broker_url=env.get("BROKER_URL", DEFAULT_BROKER_URL),
            redis_stream_prefix=env.get("REDIS_STREAM_PREFIX", "concrete-fleet"),
            environment=(env.get("ENVIRONMENT") or "development").lower(),
            log_level=env.get("LOG_LEVEL"),
            reconcile_interval_seconds=float(env.get("RECONCILE_INTERVAL_SECONDS", 30.0)),
            redelivery_delay_seconds=float(env.get("REDELIVERY_DELAY_SECONDS", 1.0)),
            run_workers_in_process=(
                None if in_process is None else in_process.strip().lower() in {"1", "true", "yes"}
            ),
            timing=timing,
        )


__all__ = ["Settings", "SimulationTiming", "DEFAULT_DATABASE_URL", "DEFAULT_BROKER_URL"]
