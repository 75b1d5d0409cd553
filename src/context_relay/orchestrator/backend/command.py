"""Subprocess-based resource processor and verification hook."""

from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import IO

from context_relay.orchestrator.backend.base import ProcessRequest
from context_relay.orchestrator.backend.providers import estimate_units_for_text
from context_relay.orchestrator.errors import ProcessorError
from context_relay.orchestrator.models import ResourceOutput, VerificationResult
from context_relay.orchestrator.sanitization import sanitize_preview

UNITS_MARKER = "context-relay-units:"
FACT_MARKER = "context-relay-fact:"

_TRANSIENT_EXIT_CODES = frozenset({75})
_PROCESSOR_PLACEHOLDERS = ("resource", "input_file", "context_file", "prompt")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class CommandProcessor:
    """Run a shell command template once per resource; stdout is the new content.

    The command may report consumed units and cross-resource facts on stderr
    with ``context-relay-units: N`` and ``context-relay-fact: key=value``
    lines. Without a units line the cost is estimated from the text sizes.
    """

    def __init__(
        self,
        command_template: str,
        *,
        workdir: Path,
        timeout_seconds: float = 600.0,
        graceful_shutdown_seconds: float = 2.0,
    ) -> None:
        stripped = command_template.strip()
        if not stripped:
            raise ProcessorError("Processor command template is empty.", transient=False)
        if "{input_file}" not in stripped and "{prompt}" not in stripped:
            raise ProcessorError(
                "Processor command template must include {input_file} or {prompt}.",
                transient=False,
            )
        self.command_template = stripped
        self.workdir = workdir
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

    def process(self, request: ProcessRequest) -> ResourceOutput:
        attempt_dir = self.workdir / _safe_name(request.subtask_id) / _safe_name(request.session_id)
        resource_name = _safe_name(request.resource_id)
        input_file = attempt_dir / "input" / resource_name
        context_file = attempt_dir / "input" / f"{resource_name}.context.json"
        stdout_path = attempt_dir / "output" / f"{resource_name}.stdout"
        stderr_path = attempt_dir / "output" / f"{resource_name}.stderr"
        input_file.parent.mkdir(parents=True, exist_ok=True)
        stdout_path.parent.mkdir(parents=True, exist_ok=True)
        input_file.write_text(request.content, "utf-8")
        context_file.write_text(
            json.dumps(request.context.to_payload(), ensure_ascii=False, indent=2),
            "utf-8",
        )

        prompt = _build_prompt(request)
        run_args, command_head = _build_run_args(
            command_template=self.command_template,
            values={
                "resource": request.resource_id,
                "input_file": str(input_file),
                "context_file": str(context_file),
                "prompt": prompt,
            },
        )

        timeout_seconds = self.timeout_seconds
        if request.remaining_seconds is not None:
            timeout_seconds = min(timeout_seconds, request.remaining_seconds)

        env = os.environ.copy()
        env["CONTEXT_RELAY_TASK_ID"] = request.task_id
        env["CONTEXT_RELAY_SUBTASK_ID"] = request.subtask_id
        env["CONTEXT_RELAY_SESSION_ID"] = request.session_id
        env["CONTEXT_RELAY_RESOURCE_ID"] = request.resource_id

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=None,
                    timeout_seconds=timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.stop_requested,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                )
        except FileNotFoundError as error:
            raise ProcessorError(
                f"Processor command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise ProcessorError(
                f"Processor command failed to start: {error}",
                transient=True,
            ) from error

        stdout = stdout_path.read_text("utf-8")
        stderr = stderr_path.read_text("utf-8")
        if timed_out:
            raise TimeoutError(
                f"Processor command timed out after {timeout_seconds:g}s: {command_head}",
            )
        if exit_code != 0:
            raise ProcessorError(
                f"Processor command exited with code {exit_code}: "
                f"{sanitize_preview(stderr, max_chars=500)}",
                transient=exit_code in _TRANSIENT_EXIT_CODES,
            )

        units, facts, notes = _parse_stderr(stderr)
        if units is None:
            units = estimate_units_for_text(prompt) + estimate_units_for_text(stdout)
        return ResourceOutput(
            content=stdout,
            units=units,
            facts=facts,
            note=sanitize_preview("\n".join(notes), max_chars=200) or None,
        )


class CommandVerificationHook:
    """Run an external check over the merged resources; exit code 0 passes."""

    def __init__(
        self,
        name: str,
        command_template: str,
        *,
        cwd: Path | None = None,
        timeout_seconds: float = 600.0,
    ) -> None:
        if not command_template.strip():
            raise ValueError("Verification command template is empty.")
        self.name = name
        self.command_template = command_template.strip()
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def run(self, resources: Sequence[str]) -> VerificationResult:
        try:
            rendered = self.command_template.format(
                resources=" ".join(shlex.quote(resource) for resource in resources),
            )
        except (KeyError, IndexError) as error:
            return VerificationResult(
                passed=False,
                diagnostics=f"Unsupported command template placeholder: {error}",
            )
        argv = shlex.split(rendered)
        if not argv:
            return VerificationResult(passed=False, diagnostics="Rendered command is empty.")

        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return VerificationResult(passed=False, diagnostics=f"Command not found: {argv[0]}")
        except subprocess.TimeoutExpired:
            return VerificationResult(
                passed=False,
                diagnostics=f"Timed out after {self.timeout_seconds}s: {argv[0]}",
            )

        output = "\n".join(part for part in (completed.stdout, completed.stderr) if part.strip())
        return VerificationResult(
            passed=completed.returncode == 0,
            diagnostics=sanitize_preview(output),
        )


def _build_prompt(request: ProcessRequest) -> str:
    summary = request.context.summary or ""
    processed = ", ".join(request.context.processed) or "(none)"
    return (
        f"{request.description}\n"
        f"\n"
        f"Resource: {request.resource_id}\n"
        f"Already processed in this session: {processed}\n"
        f"{summary}\n"
        f"\n"
        f"Write the full new content of the resource to stdout.\n"
    )


def _build_run_args(*, command_template: str, values: dict[str, str]) -> tuple[list[str], str]:
    try:
        rendered = command_template.format(
            **{key: shlex.quote(values[key]) for key in _PROCESSOR_PLACEHOLDERS},
        )
    except (KeyError, IndexError) as error:
        raise ProcessorError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProcessorError("Processor command template rendered empty command.", transient=False)
    return argv, argv[0]


def _parse_stderr(stderr: str) -> tuple[int | None, dict[str, str], list[str]]:
    units: int | None = None
    facts: dict[str, str] = {}
    notes: list[str] = []
    for line in stderr.splitlines():
        stripped = line.strip()
        if stripped.startswith(UNITS_MARKER):
            value = stripped[len(UNITS_MARKER) :].strip()
            if value.isdigit():
                units = int(value)
            continue
        if stripped.startswith(FACT_MARKER):
            key, separator, value = stripped[len(FACT_MARKER) :].strip().partition("=")
            if separator and key:
                facts[key] = value
            continue
        if stripped:
            notes.append(stripped)
    return units, facts, notes


def _safe_name(value: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", value).strip("._") or "resource"


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: float,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: float,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return 124, True

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + max(0.0, graceful_shutdown_seconds)
            if now >= shutdown_deadline:
                _terminate_process(process)
                return 124, True

        time.sleep(0.05)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
