"""CLI entrypoint for healing-pipeline."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from healing_pipeline.config import EngineSettings, load_env_file
from healing_pipeline.engine import PipelineEngine
from healing_pipeline.schemas import MarkerType, Pipeline, RunSession, RunStatus, StepType
from healing_pipeline.store import PipelineLoadError, load_pipeline, load_sessions, save_session
from healing_pipeline.variables import find_placeholders

logger = logging.getLogger(__name__)

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_INVALID_INPUT = 2
EXIT_ABORTED = 3

_EXIT_CODES = {
    RunStatus.SUCCEEDED: EXIT_SUCCEEDED,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.ABORTED: EXIT_ABORTED,
}

_WAIT_POLL_SECONDS = 0.5


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all subcommands."""
    p = argparse.ArgumentParser(
        prog="healing-pipeline",
        description="Run build/test pipelines and let a coding agent fix failures until all markers pass.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable DEBUG logging.")
    # -- Sub-commands ---------------------------------------------------------
    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run a pipeline until it succeeds, fails, or aborts.")
    run_p.add_argument("pipeline", type=str, help="Path to the pipeline JSON file.")
    run_p.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Override the pipeline's iteration cap (0 = unlimited).",
    )
    run_p.add_argument("--claude-bin", type=str, default=None, help="Claude Code CLI binary.")
    run_p.add_argument(
        "--agent-timeout",
        type=int,
        default=None,
        help="Seconds before an agent invocation is killed.",
    )
    run_p.add_argument("--max-turns", type=int, default=None, help="Agent turn limit per healing round.")
    run_p.add_argument("--history-dir", type=str, default=None, help="Where run sessions are recorded.")
    run_p.add_argument("--no-history", action="store_true", help="Do not record the run session.")

    validate_p = sub.add_parser("validate", help="Check a pipeline file without running it.")
    validate_p.add_argument("pipeline", type=str, help="Path to the pipeline JSON file.")

    history_p = sub.add_parser("history", help="List recorded run sessions, newest first.")
    history_p.add_argument("--history-dir", type=str, default=None, help="Where run sessions are recorded.")
    history_p.add_argument("--json", action="store_true", help="Print sessions as JSON.")
    return p


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate subcommand."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup (early, for all modes) --------------------------------
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    load_env_file()

    if args.command == "run":
        return _run(args)
    if args.command == "validate":
        return _validate(args)
    if args.command == "history":
        return _history(args)

    parser.print_help()
    print(
        "\nTip: run 'healing-pipeline validate <pipeline.json>' to check a pipeline,\n"
        "     then 'healing-pipeline run <pipeline.json>' to start healing.",
        file=sys.stderr,
    )
    return EXIT_INVALID_INPUT


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


def _settings_from_args(args: argparse.Namespace) -> EngineSettings:
    settings = EngineSettings.from_env()
    overrides: dict[str, object] = {}
    if getattr(args, "claude_bin", None):
        overrides["claude_binary"] = args.claude_bin
    if getattr(args, "agent_timeout", None) is not None:
        overrides["agent_timeout_seconds"] = max(1, args.agent_timeout)
    if getattr(args, "max_turns", None) is not None:
        overrides["agent_max_turns"] = max(1, args.max_turns)
    if getattr(args, "history_dir", None):
        overrides["history_dir"] = args.history_dir
    return settings.model_copy(update=overrides) if overrides else settings


def _run(args: argparse.Namespace) -> int:
    """Run a pipeline and map its terminal status to an exit code."""
    try:
        pipeline = load_pipeline(args.pipeline)
    except PipelineLoadError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    if args.max_iterations is not None:
        pipeline = pipeline.model_copy(update={"max_iterations": args.max_iterations})

    target = Path(pipeline.target_project_path) if pipeline.target_project_path else None
    if target is None or not target.is_dir():
        print(f"Error: target project path does not exist: {pipeline.target_project_path or '(empty)'}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    settings = _settings_from_args(args)
    try:
        engine = PipelineEngine(settings)
    except KeyError as exc:
        print(f"Error: {exc.args[0] if exc.args else exc}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    session = _run_until_done(engine, pipeline)
    _print_session_summary(session)

    if not args.no_history:
        try:
            path = save_session(session, settings.history_dir)
            print(f"  Session recorded: {path}")
        except OSError as exc:
            logger.warning("Could not record run session: %s", exc)

    return _EXIT_CODES.get(session.status, EXIT_FAILED)


def _run_until_done(engine: PipelineEngine, pipeline: Pipeline) -> RunSession:
    """Run on the engine thread so Ctrl+C can cancel instead of killing the CLI."""
    engine.start(pipeline)
    session: RunSession | None = None
    while session is None:
        try:
            session = engine.wait(_WAIT_POLL_SECONDS)
        except KeyboardInterrupt:
            print("\n  Cancelling (waiting for running commands to stop)...", file=sys.stderr)
            engine.cancel()
    return session


def _print_session_summary(session: RunSession) -> None:
    print(f"\n  Pipeline: {session.pipeline_name}")
    print(f"  Status: {session.status.value}")
    print(f"  Iterations: {len(session.iterations)}")
    if session.iterations:
        last = session.iterations[-1]
        print(f"  Markers: {last.passed_count}/{len(last.marker_results)} passed")
        for result in last.marker_results:
            status = "PASS" if result.passed else "FAIL"
            print(f"    [{status}] {result.marker_name}: {result.actual_value}")
    cost = session.cost.summary()
    if cost:
        print(f"  Cost: {cost}")


# ---------------------------------------------------------------------------
# validate
# ---------------------------------------------------------------------------


def validate_pipeline(pipeline: Pipeline) -> tuple[list[str], list[str]]:
    """Return ``(errors, warnings)`` for a loaded pipeline."""
    errors: list[str] = []
    warnings: list[str] = []

    if not pipeline.target_project_path:
        errors.append("target_project_path is empty")
    elif not Path(pipeline.target_project_path).is_dir():
        errors.append(f"target_project_path does not exist: {pipeline.target_project_path}")
    if not pipeline.steps:
        warnings.append("pipeline has no steps")
    if not pipeline.markers:
        warnings.append("pipeline has no markers; the first iteration will succeed")

    produced: set[str] = set()
    for index, step in enumerate(pipeline.steps, start=1):
        label = f"step {index} ({step.name or step.id})"
        if step.type != StepType.EXTRACT and not step.command.strip():
            errors.append(f"{label} has no command")
        if step.type == StepType.EXTRACT and not (step.file_path or step.command.strip()):
            errors.append(f"{label} needs a file_path or a command")
        for key in find_placeholders(step.command) + find_placeholders(step.file_path):
            if key not in produced:
                warnings.append(f"{label} references {{{{{key}}}}} before any step produces it")
        if step.output_key:
            produced.add(step.output_key)
            produced.add(f"exitcode:{step.output_key}")

    for marker in pipeline.markers:
        label = f"marker '{marker.name or marker.id}'"
        if not marker.target_value:
            errors.append(f"{label} has an empty target value")
        source_key = (marker.source or "").split(":", 1)[0]
        if marker.type != MarkerType.FILE_EXISTS and source_key and source_key not in produced:
            warnings.append(f"{label} reads '{source_key}', which no step produces")
    return errors, warnings


def _validate(args: argparse.Namespace) -> int:
    try:
        pipeline = load_pipeline(args.pipeline)
    except PipelineLoadError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_INVALID_INPUT

    errors, warnings = validate_pipeline(pipeline)
    for warning in warnings:
        print(f"  WARNING: {warning}")
    for error in errors:
        print(f"  ERROR: {error}", file=sys.stderr)
    if errors:
        return EXIT_INVALID_INPUT
    print(
        f"  OK: '{pipeline.name}' ({len(pipeline.steps)} steps, {len(pipeline.markers)} markers, "
        f"max iterations {'unlimited' if pipeline.is_unlimited else pipeline.max_iterations})"
    )
    return EXIT_SUCCEEDED


# ---------------------------------------------------------------------------
# history
# ---------------------------------------------------------------------------


def _history(args: argparse.Namespace) -> int:
    history_dir = args.history_dir or EngineSettings.from_env().history_dir
    sessions = load_sessions(history_dir)
    if args.json:
        print(json.dumps([session.model_dump(mode="json") for session in sessions], indent=2))
        return EXIT_SUCCEEDED
    if not sessions:
        print(f"  No recorded runs in {history_dir}")
        return EXIT_SUCCEEDED
    for session in sessions:
        cost = session.cost.summary()
        print(
            f"  {session.start_time}  {session.id}  {session.status.value:<9}  "
            f"{session.pipeline_name}  ({len(session.iterations)} iterations)"
            + (f"  {cost}" if cost else "")
        )
    return EXIT_SUCCEEDED


if __name__ == "__main__":
    raise SystemExit(main())
