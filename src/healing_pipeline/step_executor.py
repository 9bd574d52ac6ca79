"""Execute pipeline steps and record their output into step data."""

from __future__ import annotations

import logging
import os
import re
import threading
from collections.abc import Callable
from pathlib import Path

from healing_pipeline.file_io import read_text_lenient
from healing_pipeline.runner_common import ProcessResult, run_process
from healing_pipeline.schemas import PipelineStep, StepResult, StepType
from healing_pipeline.variables import resolve_variables

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024
TRUNCATION_PREFIX = "... [truncated] ...\n"
EXIT_CODE_KEY_PREFIX = "exitcode:"

_DOTNET_VERBS = ("restore", "build", "test", "run", "publish")

LogCallback = Callable[[str, str], None]


def exit_code_key(output_key: str) -> str:
    """Return the step-data key under which *output_key*'s exit code is stored."""
    return f"{EXIT_CODE_KEY_PREFIX}{output_key}"


def cap_output(text: str, limit: int = MAX_OUTPUT_BYTES) -> str:
    """Keep the last *limit* bytes of *text*, measured as UTF-8; errors cluster at the end.

    A multibyte character split by the cut is dropped whole.
    """
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= limit:
        return text
    return TRUNCATION_PREFIX + encoded[-limit:].decode("utf-8", errors="ignore")


def build_shell_command(command: str) -> list[str]:
    """Turn a step command string into argv.

    A command with no whitespace, or one that is a single double-quoted
    literal (an executable path containing spaces), runs directly. Everything
    else goes through the platform shell so pipes, redirects and ``&&`` work
    as written.
    """
    stripped = command.strip()
    if not any(ch.isspace() for ch in stripped):
        return [stripped]
    if len(stripped) >= 2 and stripped[0] == stripped[-1] == '"' and '"' not in stripped[1:-1]:
        return [stripped[1:-1]]
    if os.name == "nt":
        return ["cmd", "/c", stripped]
    return ["/bin/sh", "-c", stripped]


def resolve_dotnet_ambiguity(command: str, working_dir: str | Path) -> str:
    """Insert the solution file into bare ``dotnet <verb>`` commands.

    MSBuild refuses to pick a target (MSB1011) when a folder holds both a
    ``.sln`` and a ``.csproj``. When the command names neither and the folder
    has that ambiguity, the lexically first ``.sln`` is inserted right after
    the verb. Any other command is returned unchanged.
    """
    if not command or not working_dir:
        return command
    folder = Path(working_dir)
    if not folder.is_dir():
        return command

    lowered = command.lower()
    matched_prefix: str | None = None
    for verb in _DOTNET_VERBS:
        prefix = f"dotnet {verb}"
        if lowered == prefix or lowered.startswith(prefix + " "):
            matched_prefix = command[: len(prefix)]
            break
    if matched_prefix is None:
        return command

    remainder = command[len(matched_prefix):]
    remainder_lower = remainder.lower()
    if ".sln" in remainder_lower or ".csproj" in remainder_lower:
        return command

    sln_files = sorted(p.name for p in folder.glob("*.sln") if p.is_file())
    csproj_files = sorted(p.name for p in folder.glob("*.csproj") if p.is_file())
    if sln_files and csproj_files and len(sln_files) + len(csproj_files) > 1:
        return f'{matched_prefix} "{sln_files[0]}"{remainder}'
    return command


class StepExecutor:
    """Run one :class:`PipelineStep` and record its result.

    Parameters
    ----------
    log:
        Optional ``(source, message)`` callback for progress lines. Without
        one, progress goes to the module logger.
    resolve_dotnet:
        Apply :func:`resolve_dotnet_ambiguity` to commands.
    """

    def __init__(
        self,
        log: LogCallback | None = None,
        *,
        resolve_dotnet: bool = True,
    ) -> None:
        self._log_callback = log
        self.resolve_dotnet = resolve_dotnet

    def execute(
        self,
        step: PipelineStep,
        step_data: dict[str, str],
        target_project_path: str,
        cancel_event: threading.Event | None = None,
    ) -> StepResult:
        """Execute *step*, update *step_data*, and return the capped result.

        Never raises: timeouts, cancellation and spawn errors are recorded as
        step failures.
        """
        result = StepResult(step_id=step.id, step_name=step.name)
        working_dir = step.working_dir or target_project_path
        command = resolve_variables(step.command, step_data)
        if self.resolve_dotnet:
            rewritten = resolve_dotnet_ambiguity(command, working_dir)
            if rewritten != command:
                self._log(f"  Resolved build target: {rewritten}")
                command = rewritten

        try:
            if step.type == StepType.EXTRACT:
                self._run_extract(step, command, working_dir, step_data, result, cancel_event)
            elif step.type == StepType.VALIDATE:
                self._log(f"Validating: {step.name}")
                self._run_command(command, working_dir, step.timeout, result, cancel_event)
                self._log(
                    f"  Validation FAILED (exit code {result.exit_code})"
                    if result.failed
                    else "  Validation PASSED"
                )
            else:
                self._log(f"Executing: {step.name}")
                self._run_command(command, working_dir, step.timeout, result, cancel_event)
                if result.failed:
                    self._log(f"  FAILED (exit code {result.exit_code})")
                else:
                    self._log(f"  OK ({result.duration_seconds:.1f}s)")

            if step.output_key and not result.failed:
                step_data[step.output_key] = result.output
        except _StepInterrupted:
            result.failed = True
            result.exit_code = -1
            result.error = "Step was cancelled or timed out"
            self._log(f"  TIMEOUT: {step.name}")
        except Exception as exc:
            result.failed = True
            if result.exit_code == 0:
                result.exit_code = -1
            result.error = str(exc) or exc.__class__.__name__
            self._log(f"  ERROR: {result.error}")

        if step.output_key:
            step_data[exit_code_key(step.output_key)] = str(result.exit_code)

        result.output = cap_output(result.output)
        result.error = cap_output(result.error)
        return result

    # ------------------------------------------------------------------
    # Step kinds
    # ------------------------------------------------------------------

    def _run_extract(
        self,
        step: PipelineStep,
        command: str,
        working_dir: str,
        step_data: dict[str, str],
        result: StepResult,
        cancel_event: threading.Event | None,
    ) -> None:
        self._log(f"Extracting: {step.name}")

        if step.file_path:
            file_path = Path(resolve_variables(step.file_path, step_data))
            if not file_path.is_absolute() and working_dir:
                file_path = Path(working_dir) / file_path
            if file_path.is_file():
                decoded = read_text_lenient(file_path)
                result.output = decoded.text
                self._log(f"  Read {len(result.output)} chars from {file_path}")
                if decoded.is_legacy:
                    self._log(f"  Note: {file_path.name} is not UTF-8; decoded as {decoded.encoding}")
            else:
                result.failed = True
                result.error = f"File not found: {file_path}"
                self._log(f"  FAILED: {result.error}")
        elif command.strip():
            self._run_command(command, working_dir, step.timeout, result, cancel_event)

        if result.failed or not step.extraction_pattern:
            return
        try:
            match = re.search(step.extraction_pattern, result.output)
        except re.error as exc:
            result.failed = True
            result.error = f"Invalid extraction pattern: {exc}"
            self._log(f"  FAILED: {result.error}")
            return
        if match is None:
            return
        result.output = match.group(1) if match.re.groups else match.group(0)
        result.output = result.output or ""
        self._log(f"  Extracted: {result.output[:100]}")

    def _run_command(
        self,
        command: str,
        working_dir: str,
        timeout: int,
        result: StepResult,
        cancel_event: threading.Event | None,
    ) -> None:
        if not command.strip():
            raise ValueError("Step has no command to run")
        process: ProcessResult = run_process(
            build_shell_command(command),
            cwd=working_dir or None,
            timeout_seconds=timeout,
            cancel_event=cancel_event,
            process_name="step command",
        )
        result.output = process.stdout
        result.error = process.stderr
        result.duration_seconds = process.duration_seconds
        if process.interrupted:
            raise _StepInterrupted()
        result.exit_code = process.exit_code
        result.failed = process.exit_code != 0

    def _log(self, message: str) -> None:
        if self._log_callback is not None:
            self._log_callback("Step", message)
        else:
            logger.info("%s", message)


class _StepInterrupted(Exception):
    """Raised internally when a step's process was killed by timeout or stop."""
