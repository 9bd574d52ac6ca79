"""Interface to Anthropic Claude Code CLI (``claude``)."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from healing_pipeline.agent_runner import (
    DEFAULT_ALLOWED_TOOLS,
    AgentRunner,
    EventCallback,
    register_agent,
)
from healing_pipeline.prompt_logging import PromptFingerprint, describe_prompt, is_prompt_debug_enabled
from healing_pipeline.runner_common import coerce_int, resolve_binary, run_process
from healing_pipeline.schemas import AgentEvent, AgentResult

if TYPE_CHECKING:
    from healing_pipeline.config import EngineSettings

logger = logging.getLogger(__name__)

#: Tool names whose use means the agent changed a file.
EDIT_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})


class ClaudeCodeAgent(AgentRunner):
    """Spawn ``claude -p`` in agentic mode and parse its stream-json output.

    The prompt is written to stdin (then stdin is closed) so prompt size is
    never limited by the platform's command-line length. Stdout is one JSON
    event per line; stderr is drained concurrently and only logged at DEBUG.

    Parameters
    ----------
    claude_binary:
        Path or name of the Claude Code CLI binary.
    model:
        Override the model Claude Code uses (``--model``). Leave blank for
        the CLI default.
    env_overrides:
        Extra environment variables forwarded to the child process.
    """

    name = "Claude Code"

    def __init__(
        self,
        claude_binary: str = "claude",
        model: str = "",
        env_overrides: dict[str, str] | None = None,
    ) -> None:
        self.claude_binary = claude_binary or "claude"
        self.model = (model or "").strip()
        self.env_overrides = env_overrides or {}

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> ClaudeCodeAgent:
        return cls(claude_binary=settings.claude_binary, model=settings.agent_model)

    def build_command(self, *, max_turns: int, allowed_tools: str) -> list[str]:
        cmd = [
            resolve_binary(self.claude_binary) or self.claude_binary,
            "-p",
            "--verbose",
            "--output-format",
            "stream-json",
            "--allowedTools",
            allowed_tools,
            "--max-turns",
            str(max(1, coerce_int(max_turns))),
        ]
        if self.model:
            cmd.extend(["--model", self.model])
        return cmd

    def invoke(
        self,
        prompt: str,
        working_directory: str | Path,
        *,
        max_turns: int = 20,
        timeout: float = 300,
        allowed_tools: str = DEFAULT_ALLOWED_TOOLS,
        cancel_event: threading.Event | None = None,
        on_event: EventCallback | None = None,
    ) -> AgentResult:
        """Run one Claude Code session; never raises for process failures."""
        cmd = self.build_command(max_turns=max_turns, allowed_tools=allowed_tools)
        fingerprint = PromptFingerprint.of(prompt)
        logger.info(
            "Running Claude Code CLI (cwd=%s, max_turns=%s, prompt_len=%s, prompt_sha256=%s)",
            working_directory,
            max_turns,
            fingerprint.length,
            fingerprint.sha256,
        )
        if is_prompt_debug_enabled():
            logger.debug("%s", describe_prompt(prompt, label="Healing prompt", debug=True))

        response_parts: list[str] = []
        changes: list[str] = []

        def _emit(event: AgentEvent) -> None:
            if on_event is None:
                return
            try:
                on_event(event)
            except Exception:
                logger.exception("Agent event observer failed; continuing")

        def _record_change(event: AgentEvent) -> None:
            if event.tool_name in EDIT_TOOLS:
                changes.append(f"{event.tool_name}: {event.file_path}" if event.file_path else event.tool_name)

        def _on_stdout_line(line: str) -> None:
            event = parse_stream_event(line)
            if event is None:
                return
            if event.type == "assistant" and event.content is not None:
                response_parts.append(event.content)
            elif event.type == "result" and event.content is not None and not any(response_parts):
                response_parts.append(event.content)
            elif event.type == "tool_use":
                _record_change(event)
            _emit(event)

            if event.type == "assistant":
                for tool_event in embedded_tool_uses(event):
                    _record_change(tool_event)
                    _emit(tool_event)

        def _on_stderr_line(line: str) -> None:
            if line.strip():
                logger.debug("claude stderr: %s", line)

        start = time.monotonic()
        try:
            process = run_process(
                cmd,
                cwd=working_directory,
                stdin_text=prompt,
                timeout_seconds=timeout,
                cancel_event=cancel_event,
                env={**os.environ, **self.env_overrides},
                on_stdout_line=_on_stdout_line,
                on_stderr_line=_on_stderr_line,
                process_name="Claude Code",
            )
        except OSError as exc:
            logger.error("Failed to start Claude Code (%s): %s", cmd[0], exc)
            return AgentResult(exit_code=-1, duration_seconds=time.monotonic() - start)

        result = AgentResult(
            full_response="".join(response_parts),
            changes_made=changes,
            timed_out=process.timed_out,
            cancelled=process.cancelled,
            exit_code=process.exit_code,
            duration_seconds=process.duration_seconds,
        )
        if result.timed_out:
            logger.warning("Claude Code timed out after %ss; returning partial response", timeout)
        elif result.cancelled:
            logger.info("Claude Code run cancelled")
        elif result.exit_code != 0:
            logger.warning("Claude Code exited with status %s", result.exit_code)
        return result


# ---------------------------------------------------------------------------
# Stream-json parsing
# ---------------------------------------------------------------------------


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _message_text(message: Any) -> str | None:
    """Text of an ``assistant`` message: a plain string or ``text`` content blocks."""
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str)
        )
    return None


def _input_file_path(tool_input: Any) -> str | None:
    if not isinstance(tool_input, dict):
        return None
    path = tool_input.get("file_path") or tool_input.get("notebook_path")
    return path if isinstance(path, str) else None


def parse_stream_event(line: str) -> AgentEvent | None:
    """Parse one stdout line of ``claude --output-format stream-json``.

    Blank lines yield ``None``. A line that is not a JSON object with a
    string ``type`` becomes a ``raw`` event carrying the line itself.
    """
    if not line or not line.strip():
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        return AgentEvent(type="raw", content=line, raw_json=line)

    event = AgentEvent(type=data["type"], raw_json=line)
    if event.type == "assistant":
        event.content = _message_text(data.get("message"))
    elif event.type == "tool_use":
        tool_name = data.get("tool") or data.get("name")
        event.tool_name = tool_name if isinstance(tool_name, str) else None
        if "input" in data:
            event.tool_input = _json_text(data["input"])
            event.file_path = _input_file_path(data["input"])
    elif event.type == "tool_result":
        if "content" in data:
            event.content = _json_text(data["content"])
    elif event.type == "result":
        result = data.get("result")
        event.content = result if isinstance(result, str) else None
    return event


def embedded_tool_uses(event: AgentEvent) -> list[AgentEvent]:
    """Synthesize ``tool_use`` events for tool blocks inside an assistant message."""
    if event.type != "assistant" or not event.raw_json:
        return []
    try:
        data = json.loads(event.raw_json)
    except json.JSONDecodeError:
        return []
    message = data.get("message") if isinstance(data, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []

    tool_events: list[AgentEvent] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        tool_name = block.get("name")
        tool_input = block.get("input")
        tool_events.append(
            AgentEvent(
                type="tool_use",
                tool_name=tool_name if isinstance(tool_name, str) else None,
                tool_input=_json_text(tool_input) if tool_input is not None else None,
                file_path=_input_file_path(tool_input),
                raw_json=_json_text(block),
            )
        )
    return tool_events


# Selectable as settings.agent = "claude_code"
register_agent("claude_code", ClaudeCodeAgent)
