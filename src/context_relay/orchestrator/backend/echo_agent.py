"""Deterministic echo processor, in-process and as a command for integration tests."""

from __future__ import annotations

import argparse
import sys
import time
from collections.abc import Callable, Mapping
from pathlib import Path

from context_relay.orchestrator.backend.base import ProcessRequest
from context_relay.orchestrator.backend.providers import estimate_units_for_text
from context_relay.orchestrator.models import ResourceOutput


class EchoProcessor:
    """Returns each resource unchanged (or transformed) with predictable units."""

    def __init__(
        self,
        *,
        units: Mapping[str, int] | None = None,
        default_units: int | None = None,
        transform: Callable[[str, str], str] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.units = dict(units or {})
        self.default_units = default_units
        self.transform = transform
        self.delay_seconds = delay_seconds

    def process(self, request: ProcessRequest) -> ResourceOutput:
        if self.delay_seconds > 0:
            time.sleep(self.delay_seconds)
        content = request.content
        if self.transform is not None:
            content = self.transform(request.resource_id, content)
        units = self.units.get(request.resource_id)
        if units is None:
            units = (
                self.default_units
                if self.default_units is not None
                else estimate_units_for_text(request.content)
            )
        return ResourceOutput(
            content=content,
            units=units,
            facts={f"chars:{request.resource_id}": str(len(request.content))},
            note=f"echoed {len(request.content)} chars",
        )


def main(argv: list[str] | None = None) -> int:
    """Echo the input file to stdout, reporting units and one fact on stderr."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--input-file", required=True)
    parser.add_argument("--resource", default="")
    parser.add_argument("--prefix", default="")
    parser.add_argument("--units", type=int, default=None)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--error", default="")
    args = parser.parse_args(argv)

    if args.exit_code:
        sys.stderr.write(f"{args.error or 'echo agent failure'}\n")
        return args.exit_code

    content = Path(args.input_file).read_text("utf-8")
    units = args.units if args.units is not None else estimate_units_for_text(content)
    sys.stdout.write(f"{args.prefix}{content}")
    sys.stderr.write(f"context-relay-units: {units}\n")
    if args.resource:
        sys.stderr.write(f"context-relay-fact: chars:{args.resource}={len(content)}\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
