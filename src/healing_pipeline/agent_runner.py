"""The interface the healing loop uses to talk to a coding agent.

Agents are looked up by key, so settings alone decide which one runs
(``HEALING_PIPELINE_AGENT``); tests register fakes the same way.
"""

from __future__ import annotations

import abc
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from healing_pipeline.schemas import AgentEvent, AgentResult

if TYPE_CHECKING:
    from healing_pipeline.config import EngineSettings

EventCallback = Callable[[AgentEvent], None]

DEFAULT_ALLOWED_TOOLS = "Read,Edit,Write,Bash,Glob,Grep"


class AgentRunner(abc.ABC):
    """A coding agent that edits a project in response to a prompt."""

    name: str = "base"

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> AgentRunner:
        """Build an instance for *settings*. Agents without options ignore them."""
        return cls()

    @abc.abstractmethod
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
        """Hand *prompt* to the agent and block until its session ends.

        Parameters
        ----------
        working_directory:
            The target project; the only tree the agent may change.
        max_turns:
            Turn limit for the session.
        timeout:
            Seconds before the agent's process tree is killed.
        allowed_tools:
            Comma-separated tool names the agent may use.
        cancel_event:
            Set to stop the session early.
        on_event:
            Called with every stream event as it is parsed.

        Failures of the agent process are reported through
        :class:`AgentResult` (``exit_code``, ``timed_out``), not raised.
        """


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_REGISTRY: dict[str, type[AgentRunner]] = {}


def _agent_key(key: str) -> str:
    return (key or "").strip()


def register_agent(key: str, cls: type[AgentRunner]) -> None:
    """Make *cls* selectable as ``settings.agent == key``.

    Re-registering the same class is a no-op; claiming a key held by a
    different class raises ``ValueError``.
    """
    name = _agent_key(key)
    if not name:
        raise ValueError("Agent key must be a non-empty string")
    if not (isinstance(cls, type) and issubclass(cls, AgentRunner)):
        raise TypeError(f"{cls!r} is not an AgentRunner subclass")
    holder = _REGISTRY.setdefault(name, cls)
    if holder is not cls:
        raise ValueError(f"Agent '{name}' is already registered with {holder.__name__}")


def unregister_agent(key: str) -> None:
    _REGISTRY.pop(_agent_key(key), None)


def get_agent_class(key: str) -> type[AgentRunner]:
    """Return the class registered under *key*; ``KeyError`` lists the known keys."""
    name = _agent_key(key)
    try:
        return _REGISTRY[name]
    except KeyError:
        known = ", ".join(list_agents()) or "(none)"
        raise KeyError(f"Unknown agent '{name}'. Available: {known}") from None


def list_agents() -> list[str]:
    return sorted(_REGISTRY)
