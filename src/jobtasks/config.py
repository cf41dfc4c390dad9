"""Runtime configuration for the task ordering engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from jobtasks.ordering.models import DEFAULT_SPACING, REBALANCE_CEILING


@dataclass(slots=True)
class OrderingSettings:
    """Position allocation and rebalance thresholds."""

    spacing: int = DEFAULT_SPACING
    rebalance_min_gap: int = 2
    rebalance_max_gap_ratio: int = 100
    rebalance_ceiling: int = REBALANCE_CEILING
    auto_rebalance: bool = True
    auto_rebalance_min_siblings: int = 10


@dataclass(slots=True)
class ActorSettings:
    """Identity recorded for changes made from this process."""

    actor_id: str = "default_user"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".jobtasks.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    ordering: OrderingSettings = field(default_factory=OrderingSettings)
    actor: ActorSettings = field(default_factory=ActorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("JOBTASKS_DB_PATH", ".jobtasks.db")),
            sqlite_busy_timeout_ms=int(os.getenv("JOBTASKS_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("JOBTASKS_LOG_LEVEL", "WARNING").strip().upper(),
            ordering=OrderingSettings(
                spacing=int(os.getenv("JOBTASKS_POSITION_SPACING", str(DEFAULT_SPACING))),
                rebalance_min_gap=int(os.getenv("JOBTASKS_REBALANCE_MIN_GAP", "2")),
                rebalance_max_gap_ratio=int(
                    os.getenv("JOBTASKS_REBALANCE_MAX_GAP_RATIO", "100"),
                ),
                rebalance_ceiling=int(
                    os.getenv("JOBTASKS_REBALANCE_CEILING", str(REBALANCE_CEILING)),
                ),
                auto_rebalance=_env_bool("JOBTASKS_AUTO_REBALANCE", default=True),
                auto_rebalance_min_siblings=int(
                    os.getenv("JOBTASKS_AUTO_REBALANCE_MIN_SIBLINGS", "10"),
                ),
            ),
            actor=ActorSettings(
                actor_id=os.getenv("JOBTASKS_ACTOR_ID", "default_user"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for inconsistent values."""

        if self.ordering.spacing <= 1:
            raise ValueError("JOBTASKS_POSITION_SPACING must be > 1.")
        if self.ordering.rebalance_min_gap < 1:
            raise ValueError("JOBTASKS_REBALANCE_MIN_GAP must be >= 1.")
        if self.ordering.rebalance_max_gap_ratio < 1:
            raise ValueError("JOBTASKS_REBALANCE_MAX_GAP_RATIO must be >= 1.")
        if self.ordering.rebalance_ceiling <= self.ordering.spacing:
            raise ValueError("JOBTASKS_REBALANCE_CEILING must exceed the position spacing.")
        if self.ordering.auto_rebalance_min_siblings < 2:
            raise ValueError("JOBTASKS_AUTO_REBALANCE_MIN_SIBLINGS must be >= 2.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("JOBTASKS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.actor.actor_id.strip():
            raise ValueError("JOBTASKS_ACTOR_ID must not be empty.")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid JOBTASKS_LOG_LEVEL: {self.log_level!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
