"""JSON persistence for pipeline definitions and run history."""

from __future__ import annotations

import datetime as dt
import json
import logging
from contextlib import suppress
from pathlib import Path

from pydantic import ValidationError

from healing_pipeline.file_io import atomic_write_text, read_text_lenient
from healing_pipeline.schemas import Pipeline, RunSession

logger = logging.getLogger(__name__)


class PipelineLoadError(ValueError):
    """A pipeline file is missing, unreadable, or not a valid pipeline."""


def load_pipeline(path: str | Path) -> Pipeline:
    """Read and validate a pipeline definition.

    Raises :class:`PipelineLoadError` with a one-line reason on failure.
    """
    pipeline_path = Path(path)
    if not pipeline_path.is_file():
        raise PipelineLoadError(f"Pipeline file not found: {pipeline_path}")
    try:
        raw = read_text_lenient(pipeline_path).text
    except OSError as exc:
        raise PipelineLoadError(f"Could not read pipeline file {pipeline_path}: {exc}") from exc
    if not raw.strip():
        raise PipelineLoadError(f"Pipeline file is empty: {pipeline_path}")
    try:
        payload = json.loads(raw.lstrip("\ufeff"))
    except json.JSONDecodeError as exc:
        raise PipelineLoadError(f"Pipeline file is not valid JSON: {pipeline_path}: {exc}") from exc
    try:
        return Pipeline.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ())) or "(root)"
        message = first.get("msg", str(exc))
        raise PipelineLoadError(
            f"Invalid pipeline {pipeline_path}: {location}: {message}"
            + (f" (+{exc.error_count() - 1} more)" if exc.error_count() > 1 else "")
        ) from exc


def save_pipeline(pipeline: Pipeline, path: str | Path) -> Path:
    """Write *pipeline* as indented JSON, atomically."""
    pipeline_path = Path(path)
    atomic_write_text(pipeline_path, pipeline.model_dump_json(indent=2))
    return pipeline_path


def session_filename(session: RunSession) -> str:
    """``YYYYmmdd_HHMMSS_<id>.json`` from the session's start time."""
    try:
        started = dt.datetime.fromisoformat(session.start_time)
    except ValueError:
        started = dt.datetime.now(dt.timezone.utc)
    return f"{started:%Y%m%d_%H%M%S}_{session.id}.json"


def save_session(session: RunSession, history_dir: str | Path) -> Path:
    """Record *session* under *history_dir* and return the file path."""
    path = Path(history_dir) / session_filename(session)
    atomic_write_text(path, session.model_dump_json(indent=2))
    logger.debug("Saved run session %s to %s", session.id, path)
    return path


def load_sessions(history_dir: str | Path) -> list[RunSession]:
    """Load every recorded session, newest first.

    Unreadable or invalid files are skipped with a warning. Temp files left
    behind by interrupted writes are removed.
    """
    directory = Path(history_dir)
    if not directory.is_dir():
        return []

    sessions: list[RunSession] = []
    for path in sorted(directory.glob("*.json"), key=lambda p: p.name, reverse=True):
        try:
            sessions.append(RunSession.model_validate_json(path.read_text(encoding="utf-8")))
        except (OSError, UnicodeDecodeError, ValidationError) as exc:
            logger.warning("Failed to load history file '%s': %s", path.name, exc)

    for stale in directory.glob("*.tmp"):
        with suppress(OSError):
            stale.unlink()
    return sessions
