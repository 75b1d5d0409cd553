"""Runtime configuration for the orchestrator and its CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from context_relay.orchestrator.models import Budget

VERIFY_COMMAND_SEPARATOR = ";;"


@dataclass(slots=True)
class BudgetSettings:
    """Context budget applied to every subtask and session."""

    max_resources_per_subtask: int = 8
    soft_threshold: int = 60_000
    hard_threshold: int = 100_000
    concurrency_limit: int = 4
    post_compaction_baseline: int = 2_000
    session_timeout_seconds: float = 1_800.0
    max_session_retries: int = 2

    def to_budget(self) -> Budget:
        return Budget(
            max_resources_per_subtask=self.max_resources_per_subtask,
            soft_threshold=self.soft_threshold,
            hard_threshold=self.hard_threshold,
            concurrency_limit=self.concurrency_limit,
            post_compaction_baseline=self.post_compaction_baseline,
            session_timeout_seconds=self.session_timeout_seconds,
            max_session_retries=self.max_session_retries,
        )


@dataclass(slots=True)
class RetrySettings:
    """Backoff between crash retries of a subtask."""

    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0


@dataclass(slots=True)
class WorkerSettings:
    """Processor, verification and resource location settings."""

    worker_id_prefix: str = "relay-worker"
    processor_command: str = ""
    processor_timeout_seconds: float = 600.0
    verify_commands: tuple[str, ...] = ()
    resource_root: Path = Path(".")
    workdir: Path = Path(".context_relay/work")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".context_relay.db")
    sqlite_busy_timeout_ms: int = 5_000
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        return cls(
            db_path=db_path or Path(os.getenv("CONTEXT_RELAY_DB_PATH", ".context_relay.db")),
            sqlite_busy_timeout_ms=int(os.getenv("CONTEXT_RELAY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            budget=BudgetSettings(
                max_resources_per_subtask=int(
                    os.getenv("CONTEXT_RELAY_MAX_RESOURCES_PER_SUBTASK", "8"),
                ),
                soft_threshold=int(os.getenv("CONTEXT_RELAY_SOFT_THRESHOLD", "60000")),
                hard_threshold=int(os.getenv("CONTEXT_RELAY_HARD_THRESHOLD", "100000")),
                concurrency_limit=int(os.getenv("CONTEXT_RELAY_CONCURRENCY_LIMIT", "4")),
                post_compaction_baseline=int(
                    os.getenv("CONTEXT_RELAY_POST_COMPACTION_BASELINE", "2000"),
                ),
                session_timeout_seconds=float(
                    os.getenv("CONTEXT_RELAY_SESSION_TIMEOUT_SECONDS", "1800"),
                ),
                max_session_retries=int(os.getenv("CONTEXT_RELAY_MAX_SESSION_RETRIES", "2")),
            ),
            retry=RetrySettings(
                retry_base_seconds=float(os.getenv("CONTEXT_RELAY_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=float(os.getenv("CONTEXT_RELAY_RETRY_MAX_SECONDS", "300")),
            ),
            worker=WorkerSettings(
                worker_id_prefix=os.getenv("CONTEXT_RELAY_WORKER_ID_PREFIX", "relay-worker"),
                processor_command=os.getenv("CONTEXT_RELAY_PROCESSOR_COMMAND", "").strip(),
                processor_timeout_seconds=float(
                    os.getenv("CONTEXT_RELAY_PROCESSOR_TIMEOUT_SECONDS", "600"),
                ),
                verify_commands=_collect_verify_commands(),
                resource_root=Path(os.getenv("CONTEXT_RELAY_RESOURCE_ROOT", ".")),
                workdir=Path(os.getenv("CONTEXT_RELAY_WORKDIR", ".context_relay/work")),
            ),
        )

    def validate(self) -> None:  # noqa: C901, PLR0912
        """Raise configuration error naming the offending variable."""

        budget = self.budget
        if budget.max_resources_per_subtask < 1:
            raise ValueError("CONTEXT_RELAY_MAX_RESOURCES_PER_SUBTASK must be >= 1.")
        if budget.soft_threshold <= 0:
            raise ValueError("CONTEXT_RELAY_SOFT_THRESHOLD must be > 0.")
        if budget.hard_threshold <= budget.soft_threshold:
            raise ValueError(
                "CONTEXT_RELAY_HARD_THRESHOLD must be greater than CONTEXT_RELAY_SOFT_THRESHOLD.",
            )
        if budget.concurrency_limit < 1:
            raise ValueError("CONTEXT_RELAY_CONCURRENCY_LIMIT must be >= 1.")
        if not 0 <= budget.post_compaction_baseline < budget.soft_threshold:
            raise ValueError(
                "CONTEXT_RELAY_POST_COMPACTION_BASELINE must be >= 0 and below "
                "CONTEXT_RELAY_SOFT_THRESHOLD.",
            )
        if budget.session_timeout_seconds <= 0:
            raise ValueError("CONTEXT_RELAY_SESSION_TIMEOUT_SECONDS must be > 0.")
        if budget.max_session_retries < 0:
            raise ValueError("CONTEXT_RELAY_MAX_SESSION_RETRIES must be >= 0.")
        if self.retry.retry_base_seconds < 0:
            raise ValueError("CONTEXT_RELAY_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.retry_max_seconds < self.retry.retry_base_seconds:
            raise ValueError(
                "CONTEXT_RELAY_RETRY_MAX_SECONDS must be >= CONTEXT_RELAY_RETRY_BASE_SECONDS.",
            )
        if self.worker.processor_timeout_seconds <= 0:
            raise ValueError("CONTEXT_RELAY_PROCESSOR_TIMEOUT_SECONDS must be > 0.")
        if not self.worker.worker_id_prefix.strip():
            raise ValueError("CONTEXT_RELAY_WORKER_ID_PREFIX must not be empty.")
        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("CONTEXT_RELAY_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")


def _collect_verify_commands() -> tuple[str, ...]:
    raw = os.getenv("CONTEXT_RELAY_VERIFY_COMMANDS", "").strip()
    if not raw:
        return ()
    return tuple(
        part.strip() for part in raw.split(VERIFY_COMMAND_SEPARATOR) if part.strip()
    )
