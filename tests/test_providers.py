from __future__ import annotations

from pathlib import Path

import allure
import pytest

from context_relay.orchestrator.backend import (
    FileSystemResourceProvider,
    InMemoryResourceProvider,
    estimate_units_for_text,
)
from context_relay.orchestrator.sanitization import sanitize_preview

pytestmark = [
    allure.epic("Resources"),
    allure.feature("Providers and Diagnostics"),
]


def test_filesystem_provider_reads_and_writes_relative_paths(tmp_path: Path) -> None:
    provider = FileSystemResourceProvider(tmp_path)
    (tmp_path / "a.txt").write_text("12345678", "utf-8")

    provider.write("nested/b.txt", "beta")

    assert provider.read("a.txt") == "12345678"
    assert (tmp_path / "nested" / "b.txt").read_text("utf-8") == "beta"
    assert provider.estimate_units("a.txt") == 2
    assert not list(tmp_path.rglob("*.tmp"))


@pytest.mark.parametrize("resource_id", ["../outside.txt", "/etc/passwd", "", "a/../../b"])
def test_filesystem_provider_rejects_escaping_ids(tmp_path: Path, resource_id: str) -> None:
    provider = FileSystemResourceProvider(tmp_path / "root")

    with pytest.raises(ValueError):
        provider.read(resource_id)


def test_discover_skips_hidden_and_excluded_entries(tmp_path: Path) -> None:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "m.py").write_text("", "utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref", "utf-8")
    (tmp_path / ".env").write_text("SECRET=1", "utf-8")
    (tmp_path / "relay.db").write_text("", "utf-8")
    (tmp_path / "README.md").write_text("", "utf-8")

    discovered = FileSystemResourceProvider(tmp_path).discover(exclude=(tmp_path / "relay.db",))

    assert discovered == ["README.md", "src/m.py"]


def test_memory_provider_tracks_writes_and_missing_reads() -> None:
    provider = InMemoryResourceProvider({"a": "alpha"})

    provider.write("a", "ALPHA")

    assert provider.read("a") == "ALPHA"
    assert provider.writes == [("a", "ALPHA")]
    with pytest.raises(FileNotFoundError):
        provider.read("missing")


def test_unit_estimate_rounds_up() -> None:
    assert estimate_units_for_text("") == 0
    assert estimate_units_for_text("abcd") == 1
    assert estimate_units_for_text("abcde") == 2


def test_sanitize_preview_redacts_secrets_and_clamps() -> None:
    text = (
        "Authorization: Bearer abcdefghijklmnop "
        "CONTEXT_RELAY_API_KEY=supersecret mail ops@example.com "
        "https://host/cb?token=xyz&x=1"
    )

    sanitized = sanitize_preview(text)

    assert "abcdefghijklmnop" not in sanitized
    assert "supersecret" not in sanitized
    assert "ops@example.com" not in sanitized
    assert "token=[redacted]" in sanitized
    assert sanitize_preview("x" * 50, max_chars=10) == "x" * 10
    assert sanitize_preview("   ") == ""
