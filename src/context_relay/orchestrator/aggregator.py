"""Merge subtask outputs, write them back and run verification hooks."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from context_relay.orchestrator.backend.base import ResourceProvider, VerificationHook
from context_relay.orchestrator.errors import ConflictError, VerificationFailure
from context_relay.orchestrator.models import (
    FailureClass,
    Subtask,
    SubtaskStatus,
    TaskOutcome,
    TaskStatus,
)
from context_relay.orchestrator.replay import TaskState
from context_relay.orchestrator.sanitization import sanitize_preview

logger = logging.getLogger(__name__)


class ResultAggregator:
    """Fail-fast merge followed by sequential verification."""

    def __init__(
        self,
        *,
        provider: ResourceProvider | None = None,
        hooks: Sequence[VerificationHook] = (),
    ) -> None:
        self.provider = provider
        self.hooks = tuple(hooks)

    def merge(self, outputs_by_subtask: Mapping[str, Mapping[str, str]]) -> dict[str, str]:
        """Combine per-subtask outputs; differing claims on one resource conflict."""

        claims: dict[str, dict[str, str]] = {}
        for subtask_id, outputs in outputs_by_subtask.items():
            for resource, content in outputs.items():
                claims.setdefault(resource, {})[subtask_id] = content

        conflicts = sorted(
            resource for resource, claim in claims.items() if len(set(claim.values())) > 1
        )
        if conflicts:
            resource = conflicts[0]
            raise ConflictError(resource, tuple(sorted(claims[resource])))
        return {resource: next(iter(claims[resource].values())) for resource in sorted(claims)}

    def aggregate(
        self,
        state: TaskState,
        *,
        still_open: Callable[[], bool] | None = None,
    ) -> TaskOutcome:
        """Merge, write and verify a settled task.

        ``still_open`` is consulted right before the first write; once it reports
        False nothing is written and the outcome is discarded by the caller.
        """

        task_id = state.task_id
        subtasks = [state.subtasks[key] for key in sorted(state.subtasks)]
        failed = [subtask for subtask in subtasks if subtask.status == SubtaskStatus.FAILED]
        cancelled = [subtask for subtask in subtasks if subtask.status == SubtaskStatus.CANCELLED]
        if failed or cancelled:
            return TaskOutcome(
                task_id=task_id,
                status=TaskStatus.FAILED,
                diagnostic=_subtask_failure_diagnostic(failed, cancelled),
            )

        try:
            merged = self.merge(
                {
                    subtask.subtask_id: state.outputs.get(subtask.subtask_id, {})
                    for subtask in subtasks
                },
            )
        except ConflictError as error:
            logger.warning("Task %s: %s", task_id, error)
            return TaskOutcome(
                task_id=task_id,
                status=TaskStatus.FAILED,
                diagnostic={
                    "reason": "conflict",
                    "failure_class": FailureClass.CONFLICT.value,
                    "resource": error.resource,
                    "subtask_ids": list(error.subtask_ids),
                },
                error=error,
            )

        missing = sorted(set(state.task.resources) - set(merged))
        if missing:
            return TaskOutcome(
                task_id=task_id,
                status=TaskStatus.FAILED,
                outputs=merged,
                diagnostic={"reason": "missing_outputs", "resources": missing},
            )

        if still_open is not None and not still_open():
            logger.info("Task %s closed before its outputs were written", task_id)
            return TaskOutcome(
                task_id=task_id,
                status=TaskStatus.FAILED,
                outputs=merged,
                diagnostic={"reason": "task_closed"},
            )

        if self.provider is not None:
            for resource in sorted(merged):
                try:
                    self.provider.write(resource, merged[resource])
                except OSError as error:
                    logger.warning("Task %s: writing %s failed: %s", task_id, resource, error)
                    return TaskOutcome(
                        task_id=task_id,
                        status=TaskStatus.FAILED,
                        outputs=merged,
                        diagnostic={
                            "reason": "write_failed",
                            "resource": resource,
                            "error": sanitize_preview(str(error)),
                        },
                        error=error,
                    )

        resources = tuple(sorted(merged))
        for hook in self.hooks:
            failure = self._run_hook(hook, resources)
            if failure is not None:
                logger.warning("Task %s: verification hook %s failed", task_id, hook.name)
                return TaskOutcome(
                    task_id=task_id,
                    status=TaskStatus.FAILED,
                    outputs=merged,
                    diagnostic={
                        "reason": "verification_failed",
                        "failure_class": FailureClass.VERIFICATION_FAILED.value,
                        "hook": failure.hook,
                        "diagnostics": failure.diagnostics,
                    },
                    error=failure,
                )

        return TaskOutcome(
            task_id=task_id,
            status=TaskStatus.COMPLETED,
            outputs=merged,
            diagnostic={
                "resources": len(merged),
                "hooks": [hook.name for hook in self.hooks],
            },
        )

    def _run_hook(
        self,
        hook: VerificationHook,
        resources: tuple[str, ...],
    ) -> VerificationFailure | None:
        try:
            result = hook.run(resources)
        except Exception as error:  # noqa: BLE001
            diagnostics = sanitize_preview(f"{type(error).__name__}: {error}")
            return VerificationFailure(hook.name, diagnostics)
        if result.passed:
            return None
        return VerificationFailure(hook.name, sanitize_preview(result.diagnostics))


def _subtask_failure_diagnostic(
    failed: list[Subtask],
    cancelled: list[Subtask],
) -> dict[str, Any]:
    failures = []
    for subtask in failed:
        diagnostic = subtask.diagnostic or {}
        failures.append(
            {
                "subtask_id": subtask.subtask_id,
                "resource": diagnostic.get("resource"),
                "failure_class": diagnostic.get("failure_class"),
                "attempt": diagnostic.get("attempt", subtask.attempt),
                "error": diagnostic.get("error"),
            },
        )
    payload: dict[str, Any] = {
        "reason": "subtask_failed",
        "failed_subtasks": failures,
        "cancelled_subtasks": [subtask.subtask_id for subtask in cancelled],
    }
    if failures:
        first = failures[0]
        payload.update(
            subtask_id=first["subtask_id"],
            resource=first["resource"],
            failure_class=first["failure_class"],
            attempt=first["attempt"],
            error=first["error"],
        )
    return payload
