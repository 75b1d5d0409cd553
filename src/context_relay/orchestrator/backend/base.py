"""Collaborator interfaces used by the scheduler and worker sessions."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from context_relay.orchestrator.compaction import WorkingContext
from context_relay.orchestrator.models import ResourceOutput, VerificationResult


@dataclass(slots=True)
class ProcessRequest:
    """Inputs required to process one resource inside a session."""

    task_id: str
    subtask_id: str
    session_id: str
    description: str
    resource_id: str
    content: str
    context: WorkingContext
    stop_requested: Callable[[], bool] | None = None
    remaining_seconds: float | None = None


class ResourceProvider(Protocol):
    """Reads and writes addressable resources."""

    def read(self, resource_id: str) -> str:
        """Return current resource content."""

    def write(self, resource_id: str, content: str) -> None:
        """Persist merged resource content."""


class ResourceProcessor(Protocol):
    """Performs the per-resource work of a task."""

    def process(self, request: ProcessRequest) -> ResourceOutput:
        """Process one resource and report the budget units consumed."""


class VerificationHook(Protocol):
    """External check run against the merged result of a task."""

    name: str

    def run(self, resources: Sequence[str]) -> VerificationResult:
        """Verify the merged resources."""
