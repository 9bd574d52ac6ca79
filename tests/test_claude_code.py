"""Tests for the Claude Code CLI agent and its stream-json parsing."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from healing_pipeline.agent_runner import get_agent_class
from healing_pipeline.claude_code import ClaudeCodeAgent, embedded_tool_uses, parse_stream_event
from healing_pipeline.config import EngineSettings
from healing_pipeline.schemas import AgentEvent

_STUB_CLAUDE = """
import json
import os
import sys
import time

prompt = sys.stdin.read()
with open(os.environ["STUB_CAPTURE"], "w", encoding="utf-8") as handle:
    json.dump({"argv": sys.argv[1:], "prompt": prompt, "cwd": os.getcwd()}, handle)


def emit(obj):
    print(json.dumps(obj), flush=True)


mode = os.environ.get("STUB_MODE", "ok")
if mode == "ok":
    emit({"type": "system", "subtype": "init"})
    emit({
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "Fixed "},
                {"type": "tool_use", "name": "Edit", "input": {"file_path": "src/a.py"}},
            ]
        },
    })
    print("not json at all", flush=True)
    emit({"type": "tool_use", "tool": "Write", "input": {"file_path": "src/b.py", "content": "x"}})
    emit({"type": "tool_use", "tool": "Read", "input": {"file_path": "src/c.py"}})
    emit({"type": "tool_result", "content": [{"type": "text", "text": "ok"}]})
    emit({"type": "assistant", "message": "it."})
    emit({"type": "result", "result": "Summary", "total_cost_usd": 0.02})
elif mode == "result_only":
    emit({"type": "result", "result": "Final answer"})
elif mode == "fail":
    print("boom", file=sys.stderr, flush=True)
    sys.exit(3)
elif mode == "hang":
    emit({"type": "assistant", "message": "partial"})
    time.sleep(30)
"""


@pytest.mark.unit
class TestParseStreamEvent:
    def test_blank_line(self):
        assert parse_stream_event("") is None
        assert parse_stream_event("   ") is None

    @pytest.mark.parametrize("line", ["not json", "[1, 2]", '{"no_type": 1}', '{"type": 5}'])
    def test_unparseable_lines_become_raw(self, line):
        event = parse_stream_event(line)
        assert event is not None
        assert event.type == "raw"
        assert event.content == line

    def test_assistant_plain_string(self):
        event = parse_stream_event('{"type": "assistant", "message": "hello"}')
        assert event.type == "assistant"
        assert event.content == "hello"

    def test_assistant_text_blocks_are_concatenated(self):
        line = json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "a"},
                        {"type": "tool_use", "name": "Read"},
                        {"type": "text", "text": "b"},
                    ]
                },
            }
        )
        assert parse_stream_event(line).content == "ab"

    def test_assistant_string_content(self):
        assert parse_stream_event('{"type": "assistant", "message": {"content": "x"}}').content == "x"

    def test_tool_use(self):
        event = parse_stream_event('{"type": "tool_use", "tool": "Edit", "input": {"file_path": "a.py", "old": "1"}}')
        assert event.tool_name == "Edit"
        assert event.file_path == "a.py"
        assert json.loads(event.tool_input) == {"file_path": "a.py", "old": "1"}

    def test_tool_use_notebook_path(self):
        event = parse_stream_event('{"type": "tool_use", "name": "NotebookEdit", "input": {"notebook_path": "n.ipynb"}}')
        assert event.tool_name == "NotebookEdit"
        assert event.file_path == "n.ipynb"

    def test_tool_result(self):
        event = parse_stream_event('{"type": "tool_result", "content": "done"}')
        assert event.type == "tool_result"
        assert event.content == '"done"'

    def test_result(self):
        assert parse_stream_event('{"type": "result", "result": "final"}').content == "final"
        assert parse_stream_event('{"type": "result", "result": {"x": 1}}').content is None

    def test_unknown_type_is_kept(self):
        line = '{"type": "system", "subtype": "init"}'
        event = parse_stream_event(line)
        assert event.type == "system"
        assert event.raw_json == line

    def test_embedded_tool_uses(self):
        event = parse_stream_event(
            json.dumps(
                {
                    "type": "assistant",
                    "message": {
                        "content": [
                            {"type": "text", "text": "editing"},
                            {"type": "tool_use", "name": "Write", "input": {"file_path": "out.txt"}},
                            {"type": "tool_use", "name": "Bash", "input": {"command": "ls"}},
                        ]
                    },
                }
            )
        )
        tools = embedded_tool_uses(event)
        assert [(t.tool_name, t.file_path) for t in tools] == [("Write", "out.txt"), ("Bash", None)]
        assert embedded_tool_uses(AgentEvent(type="result", raw_json="{}")) == []


@pytest.mark.unit
class TestBuildCommand:
    def test_default_flags(self):
        agent = ClaudeCodeAgent(claude_binary="no-such-claude-binary-xyz")
        assert agent.build_command(max_turns=7, allowed_tools="Read,Edit") == [
            "no-such-claude-binary-xyz",
            "-p",
            "--verbose",
            "--output-format",
            "stream-json",
            "--allowedTools",
            "Read,Edit",
            "--max-turns",
            "7",
        ]

    def test_model_and_turn_floor(self):
        cmd = ClaudeCodeAgent(claude_binary="no-such-claude-binary-xyz", model=" opus ").build_command(
            max_turns=0, allowed_tools="Read"
        )
        assert cmd[-4:] == ["--max-turns", "1", "--model", "opus"]

    def test_from_settings_and_registry(self):
        agent = get_agent_class("claude_code").from_settings(
            EngineSettings(claude_binary="/opt/claude", agent_model="sonnet")
        )
        assert isinstance(agent, ClaudeCodeAgent)
        assert agent.claude_binary == "/opt/claude"
        assert agent.model == "sonnet"


@pytest.mark.integration
class TestInvoke:
    @pytest.fixture
    def project(self, tmp_path: Path) -> Path:
        path = tmp_path / "project"
        path.mkdir()
        return path

    def _agent(self, make_stub_cli, tmp_path: Path, mode: str) -> ClaudeCodeAgent:
        binary = make_stub_cli("claude", _STUB_CLAUDE)
        return ClaudeCodeAgent(
            claude_binary=binary,
            env_overrides={"STUB_MODE": mode, "STUB_CAPTURE": str(tmp_path / "capture.json")},
        )

    def test_aggregates_response_and_changes(self, make_stub_cli, tmp_path: Path, project: Path):
        agent = self._agent(make_stub_cli, tmp_path, "ok")
        events: list[AgentEvent] = []

        result = agent.invoke("please fix", project, max_turns=5, timeout=30, on_event=events.append)

        assert result.exit_code == 0
        assert not result.timed_out
        assert result.full_response == "Fixed it."
        assert result.changes_made == ["Edit: src/a.py", "Write: src/b.py"]
        types = [event.type for event in events]
        assert types.count("raw") == 1
        assert types.count("tool_use") == 3
        assert types[-1] == "result"

        captured = json.loads((tmp_path / "capture.json").read_text(encoding="utf-8"))
        assert captured["prompt"] == "please fix"
        assert Path(captured["cwd"]).resolve() == project.resolve()
        assert captured["argv"][:4] == ["-p", "--verbose", "--output-format", "stream-json"]
        assert captured["argv"][-2:] == ["--max-turns", "5"]

    def test_result_is_fallback_response(self, make_stub_cli, tmp_path: Path, project: Path):
        result = self._agent(make_stub_cli, tmp_path, "result_only").invoke("p", project, timeout=30)
        assert result.full_response == "Final answer"
        assert result.changes_made == []

    def test_nonzero_exit_is_reported(self, make_stub_cli, tmp_path: Path, project: Path):
        result = self._agent(make_stub_cli, tmp_path, "fail").invoke("p", project, timeout=30)
        assert result.exit_code == 3
        assert result.full_response == ""

    def test_observer_errors_are_ignored(self, make_stub_cli, tmp_path: Path, project: Path):
        def _boom(_event: AgentEvent) -> None:
            raise RuntimeError("listener failure")

        result = self._agent(make_stub_cli, tmp_path, "ok").invoke("p", project, timeout=30, on_event=_boom)
        assert result.full_response == "Fixed it."
        assert len(result.changes_made) == 2

    def test_large_prompt_goes_through_stdin(self, make_stub_cli, tmp_path: Path, project: Path):
        prompt = "x" * 300_000
        self._agent(make_stub_cli, tmp_path, "result_only").invoke(prompt, project, timeout=30)
        captured = json.loads((tmp_path / "capture.json").read_text(encoding="utf-8"))
        assert len(captured["prompt"]) == 300_000

    def test_missing_binary(self, tmp_path: Path, project: Path):
        agent = ClaudeCodeAgent(claude_binary=str(tmp_path / "missing-claude"))
        result = agent.invoke("p", project, timeout=5)
        assert result.exit_code == -1
        assert result.full_response == ""

    @pytest.mark.slow
    @pytest.mark.skipif(sys.platform == "win32", reason="stub wrapper is a POSIX shell script")
    def test_timeout_keeps_partial_response(self, make_stub_cli, tmp_path: Path, project: Path):
        result = self._agent(make_stub_cli, tmp_path, "hang").invoke("p", project, timeout=2)
        assert result.timed_out
        assert result.exit_code == -1
        assert result.full_response == "partial"
