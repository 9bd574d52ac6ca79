"""Accumulate agent usage and cost across a run."""

from __future__ import annotations

import json
import logging
import math
import threading
from collections.abc import Mapping
from typing import Any

from healing_pipeline.runner_common import coerce_int
from healing_pipeline.schemas import AgentEvent, CostInfo

logger = logging.getLogger(__name__)


def _coerce_float(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


class CostTracker:
    """Thread-safe running total fed by ``result`` events.

    Each ``result`` event counts as one agent invocation. Cost is read from
    ``total_cost_usd`` (falling back to ``cost_usd``) and tokens from
    ``usage.input_tokens`` / ``usage.output_tokens``; missing fields add
    nothing.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._info = CostInfo()

    @property
    def info(self) -> CostInfo:
        """Snapshot of the current totals."""
        with self._lock:
            return self._info.model_copy()

    def record_event(self, event: AgentEvent) -> CostInfo | None:
        """Record *event* if it is a ``result`` event; return the new totals."""
        if event.type != "result" or not event.raw_json:
            return None
        try:
            raw = json.loads(event.raw_json)
        except json.JSONDecodeError:
            logger.debug("Ignoring unparseable result event for cost tracking")
            return None
        if not isinstance(raw, Mapping):
            return None
        return self.record_result(raw)

    def record_result(self, raw: Mapping[str, Any]) -> CostInfo:
        """Add one ``result`` payload to the totals and return a snapshot."""
        cost = raw.get("total_cost_usd")
        if cost is None:
            cost = raw.get("cost_usd")
        usage = raw.get("usage")
        if not isinstance(usage, Mapping):
            usage = {}

        with self._lock:
            self._info.invocations += 1
            self._info.total_cost_usd += _coerce_float(cost)
            self._info.input_tokens += max(0, coerce_int(usage.get("input_tokens")))
            self._info.output_tokens += max(0, coerce_int(usage.get("output_tokens")))
            return self._info.model_copy()
