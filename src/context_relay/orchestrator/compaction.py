"""Working context carried by a session and its compaction."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from context_relay.orchestrator.models import ResourceOutput


@dataclass(slots=True)
class WorkingContext:
    """What a session has learned so far about its subtask."""

    processed: list[str] = field(default_factory=list)
    facts: dict[str, str] = field(default_factory=dict)
    transcript: list[str] = field(default_factory=list)
    summary: str | None = None

    def absorb(self, resource: str, output: ResourceOutput) -> None:
        self.processed.append(resource)
        self.facts.update(output.facts)
        if output.note:
            self.transcript.append(f"{resource}: {output.note}")

    def to_payload(self) -> dict[str, Any]:
        return {
            "processed": list(self.processed),
            "facts": dict(sorted(self.facts.items())),
            "transcript": list(self.transcript),
            "summary": self.summary,
        }


@dataclass(frozen=True, slots=True)
class CompactionResult:
    """Compacted context and its size in budget units."""

    context: WorkingContext
    units: int


class Compactor(Protocol):
    """Summarizes a working context while preserving cross-resource facts."""

    def compact(self, context: WorkingContext) -> CompactionResult:
        """Return the compacted context."""


class FactPreservingCompactor:
    """Drops the transcript, keeps processed resources and facts verbatim."""

    def __init__(self, *, units_per_fact: int = 1, units_per_resource: int = 1) -> None:
        if units_per_fact < 0 or units_per_resource < 0:
            raise ValueError("Compaction unit weights must be >= 0.")
        self.units_per_fact = units_per_fact
        self.units_per_resource = units_per_resource

    def compact(self, context: WorkingContext) -> CompactionResult:
        facts = dict(sorted(context.facts.items()))
        lines = [f"Processed {len(context.processed)} resource(s): {', '.join(context.processed)}"]
        lines.extend(f"{key}={value}" for key, value in facts.items())
        compacted = WorkingContext(
            processed=list(context.processed),
            facts=facts,
            transcript=[],
            summary="\n".join(lines),
        )
        units = (
            len(compacted.processed) * self.units_per_resource
            + len(compacted.facts) * self.units_per_fact
        )
        return CompactionResult(context=compacted, units=units)
