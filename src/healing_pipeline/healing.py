"""One healing round: build the prompt, run the agent, record the exchange."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence

from healing_pipeline import claude_code  # noqa: F401  (registers "claude_code")
from healing_pipeline.agent_runner import AgentRunner, EventCallback, get_agent_class
from healing_pipeline.config import EngineSettings
from healing_pipeline.prompt_builder import build_healing_prompt
from healing_pipeline.schemas import AgentEvent, Iteration, Pipeline, TranscriptEntry

logger = logging.getLogger(__name__)

LogCallback = Callable[[str, str], None]


def create_agent(settings: EngineSettings) -> AgentRunner:
    """Instantiate the agent registered under ``settings.agent``."""
    return get_agent_class(settings.agent).from_settings(settings)


class HealingLoop:
    """Hand failing iterations to the coding agent.

    Parameters
    ----------
    settings:
        Agent limits and prompt budget.
    agent:
        Agent to invoke. Defaults to the one registered under
        ``settings.agent``.
    log:
        ``(source, message)`` callback for progress lines. Agent text and
        tool uses are reported with source ``"Claude"``.
    on_event:
        Receives every agent stream event after it has been logged.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        agent: AgentRunner | None = None,
        log: LogCallback | None = None,
        on_event: EventCallback | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.agent = agent or create_agent(self.settings)
        self._log_callback = log
        self._on_event = on_event

    def heal(
        self,
        pipeline: Pipeline,
        current_iteration: Iteration,
        previous_iterations: Sequence[Iteration],
        transcript: list[TranscriptEntry],
        cancel_event: threading.Event | None = None,
    ) -> tuple[str, list[str]]:
        """Run one healing round and return ``(analysis, changes)``.

        Appends a :class:`TranscriptEntry` to *transcript*. Agent timeouts
        and non-zero exits are reported, not raised or retried.
        """
        self._log("Engine", f"Invoking {self.agent.name} for healing (iteration {current_iteration.number})...")
        prompt = build_healing_prompt(
            pipeline,
            current_iteration,
            previous_iterations,
            transcript,
            char_budget=self.settings.prompt_char_budget,
        )

        result = self.agent.invoke(
            prompt,
            pipeline.target_project_path,
            max_turns=self.settings.agent_max_turns,
            timeout=self.settings.agent_timeout_seconds,
            allowed_tools=self.settings.allowed_tools,
            cancel_event=cancel_event,
            on_event=self._handle_event,
        )

        transcript.append(TranscriptEntry(prompt=prompt, response=result.full_response))

        summary = ", ".join(result.changes_made) if result.changes_made else "no file changes detected"
        self._log("Engine", f"{self.agent.name} finished: {len(result.changes_made)} changes ({summary})")
        if result.timed_out:
            self._log("Engine", f"WARNING: {self.agent.name} timed out")
        elif result.exit_code != 0 and not result.cancelled:
            self._log("Engine", f"WARNING: {self.agent.name} exited with code {result.exit_code}")

        return result.full_response, list(result.changes_made)

    def _handle_event(self, event: AgentEvent) -> None:
        if event.type == "assistant" and event.content:
            self._log("Claude", event.content)
        elif event.type == "tool_use":
            description = event.tool_name or "unknown"
            if event.file_path:
                description += f": {event.file_path}"
            self._log("Claude", f"  [{description}]")
        if self._on_event is not None:
            self._on_event(event)

    def _log(self, source: str, message: str) -> None:
        if self._log_callback is not None:
            self._log_callback(source, message)
        else:
            logger.info("[%s] %s", source, message)
