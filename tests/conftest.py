"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import pytest

from context_relay.ledger import InMemoryLedgerBackend, PlanLedger
from context_relay.orchestrator.models import Budget

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m context_relay.orchestrator.backend.echo_agent "
    "--input-file {input_file} --resource {resource}"
)
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture()
def ledger() -> PlanLedger:
    return PlanLedger(InMemoryLedgerBackend())


@pytest.fixture()
def small_budget() -> Budget:
    """Ten units per resource cross both thresholds on the third resource."""

    return Budget(
        max_resources_per_subtask=8,
        soft_threshold=25,
        hard_threshold=30,
        concurrency_limit=2,
        post_compaction_baseline=5,
        session_timeout_seconds=60.0,
        max_session_retries=2,
    )


@pytest.fixture()
def echo_agent_command(monkeypatch: pytest.MonkeyPatch) -> str:
    """Echo agent command template, importable from the source tree."""

    existing = os.environ.get("PYTHONPATH", "")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join(part for part in (str(SRC_DIR), existing) if part),
    )
    return ECHO_AGENT_COMMAND_TEMPLATE
