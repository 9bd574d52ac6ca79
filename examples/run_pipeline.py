#!/usr/bin/env python3
"""Example: run a pipeline file with a console progress listener.

Usage:
    python examples/run_pipeline.py examples/dotnet_build_test.json
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Allow running from the repo root without installing the package
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from healing_pipeline.config import EngineSettings
from healing_pipeline.engine import EngineListener, PipelineEngine
from healing_pipeline.schemas import CostInfo, MarkerResult
from healing_pipeline.store import load_pipeline


class ConsoleListener(EngineListener):
    def on_iteration(self, number: int, max_iterations: int) -> None:
        cap = str(max_iterations) if max_iterations else "unlimited"
        print(f"--- iteration {number} of {cap} ---")

    def on_markers(self, results: list[MarkerResult]) -> None:
        for result in results:
            print(f"  {'PASS' if result.passed else 'FAIL'}  {result.marker_name} = {result.actual_value}")

    def on_cost(self, cost: CostInfo) -> None:
        print(f"  cost so far: {cost.summary()}")


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: run_pipeline.py <pipeline.json>")
        sys.exit(2)

    logging.basicConfig(level=logging.WARNING)
    pipeline = load_pipeline(sys.argv[1])
    engine = PipelineEngine(EngineSettings.from_env(), listener=ConsoleListener())
    session = engine.run(pipeline)

    print(f"\nStatus:      {session.status.value}")
    print(f"Iterations:  {len(session.iterations)}")
    print(f"Cost:        {session.cost.summary() or '(none)'}")


if __name__ == "__main__":
    main()
