"""Engine settings, read from ``HEALING_PIPELINE_*`` environment variables."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

from healing_pipeline.agent_runner import DEFAULT_ALLOWED_TOOLS
from healing_pipeline.runner_common import coerce_int

logger = logging.getLogger(__name__)

ENV_PREFIX = "HEALING_PIPELINE_"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


class EngineSettings(BaseModel):
    """Knobs for the agent, the regression guard and prompt assembly."""

    claude_binary: str = "claude"
    agent_model: str = ""
    agent_max_turns: int = Field(default=20, ge=1)
    agent_timeout_seconds: int = Field(default=300, ge=1)
    allowed_tools: str = DEFAULT_ALLOWED_TOOLS
    agent: str = "claude_code"
    regression_window: int = Field(default=4, ge=2)
    regression_consecutive: int = Field(default=3, ge=1)
    prompt_char_budget: int = Field(default=80_000, ge=1_000)
    resolve_dotnet_ambiguity: bool = True
    history_dir: str = ".healing_pipeline/history"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineSettings:
        """Build settings from ``HEALING_PIPELINE_<FIELD>`` variables.

        Unset or blank variables keep the default. Numeric values go through
        :func:`coerce_int`; a value that coerces to something out of range
        is ignored with a warning rather than failing the run.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        values: dict[str, object] = {}
        for name, field in cls.model_fields.items():
            raw = str(env.get(f"{ENV_PREFIX}{name.upper()}", "")).strip()
            if not raw:
                continue
            if field.annotation is int:
                values[name] = coerce_int(raw)
            elif field.annotation is bool:
                lowered = raw.lower()
                if lowered in _TRUTHY:
                    values[name] = True
                elif lowered in _FALSY:
                    values[name] = False
                else:
                    logger.warning("Ignoring %s%s=%r (expected a boolean)", ENV_PREFIX, name.upper(), raw)
            else:
                values[name] = raw

        for name in list(values):
            try:
                cls.model_validate({**defaults.model_dump(), name: values[name]})
            except ValueError:
                logger.warning(
                    "Ignoring %s%s=%r (out of range); using %r",
                    ENV_PREFIX,
                    name.upper(),
                    values[name],
                    getattr(defaults, name),
                )
                values.pop(name)
        return cls(**values)


def load_env_file(path: str | Path | None = None) -> bool:
    """Load a ``.env`` file into ``os.environ`` without overriding set values.

    With no *path*, the nearest ``.env`` at or above the working directory
    is used. Returns True when a file was loaded.
    """
    if path is None:
        found = find_dotenv(usecwd=True)
        if not found:
            return False
        path = found
    env_file = Path(path)
    if not env_file.is_file():
        return False
    loaded = load_dotenv(env_file, override=False)
    if loaded:
        logger.debug("Loaded environment from %s", env_file)
    return bool(loaded)
