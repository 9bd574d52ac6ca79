"""Pipeline engine: the run, check, fix, repeat state machine.

Each iteration runs the pipeline's steps against the target project,
evaluates the markers over the captured step data and, if any marker fails,
hands the evidence to the healing agent before trying again. A run ends
when every marker passes, the iteration cap is reached, the pass counts
show a sustained regression, or the run is cancelled.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Sequence

from healing_pipeline.agent_runner import AgentRunner
from healing_pipeline.config import EngineSettings
from healing_pipeline.cost import CostTracker
from healing_pipeline.healing import HealingLoop
from healing_pipeline.markers import evaluate_markers
from healing_pipeline.regression import is_regressing, pass_count_trend
from healing_pipeline.schemas import (
    AgentEvent,
    CostInfo,
    FailBehavior,
    Iteration,
    MarkerResult,
    Pipeline,
    RunSession,
    RunStatus,
    utc_now_iso,
)
from healing_pipeline.step_executor import StepExecutor

logger = logging.getLogger(__name__)

_GATE_POLL_SECONDS = 0.1


class PipelineCancelled(Exception):
    """Raised inside the run loop when a cancel request is observed."""


class PauseGate:
    """Open/closed gate checked at every step and healing boundary."""

    def __init__(self) -> None:
        self._open = threading.Event()
        self._open.set()

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    def open(self) -> None:
        self._open.set()

    def close(self) -> None:
        self._open.clear()

    def wait(self, cancel_event: threading.Event) -> None:
        """Block while closed; raise :class:`PipelineCancelled` if cancelled."""
        while not self._open.wait(_GATE_POLL_SECONDS):
            if cancel_event.is_set():
                raise PipelineCancelled()
        if cancel_event.is_set():
            raise PipelineCancelled()


class EngineListener:
    """Progress callbacks. Override what you need; the rest are no-ops.

    Callbacks run on the engine's thread. Exceptions they raise are logged
    and do not affect the run.
    """

    def on_log(self, source: str, message: str) -> None:
        pass

    def on_iteration(self, number: int, max_iterations: int) -> None:
        """*max_iterations* is ``0`` for unlimited runs."""

    def on_markers(self, results: list[MarkerResult]) -> None:
        pass

    def on_status(self, status: RunStatus) -> None:
        pass

    def on_phase(self, phase: str) -> None:
        pass

    def on_agent_event(self, event: AgentEvent) -> None:
        pass

    def on_cost(self, cost: CostInfo) -> None:
        pass

    def on_regression(self, detected: bool) -> None:
        pass


class PipelineEngine:
    """Runs a :class:`Pipeline` to a terminal :class:`RunStatus`.

    ``run()`` blocks on the calling thread. ``start()`` runs the same loop
    on a daemon thread so ``pause()``, ``resume()`` and ``cancel()`` can be
    called from elsewhere; ``wait()`` joins it and returns the session.

    Parameters
    ----------
    settings:
        Agent limits, regression thresholds and prompt budget.
    listener:
        Receives progress callbacks.
    agent:
        Healing agent override (tests, alternative agents). Defaults to the
        agent registered under ``settings.agent``.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        listener: EngineListener | None = None,
        agent: AgentRunner | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.listener = listener or EngineListener()
        self._cancel_event = threading.Event()
        self._pause_gate = PauseGate()
        self._run_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._current_session: RunSession | None = None
        self._last_session: RunSession | None = None
        self._cost = CostTracker()

        self._step_executor = StepExecutor(
            log=self._log,
            resolve_dotnet=self.settings.resolve_dotnet_ambiguity,
        )
        self._healing_loop = HealingLoop(
            self.settings,
            agent=agent,
            log=self._log,
            on_event=self._handle_agent_event,
        )

    # ------------------------------------------------------------------
    # Public controls
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def is_paused(self) -> bool:
        return not self._pause_gate.is_open

    @property
    def current_session(self) -> RunSession | None:
        """The session of the run in progress, if any."""
        return self._current_session

    @property
    def last_session(self) -> RunSession | None:
        """The most recently finished session."""
        return self._last_session

    def start(self, pipeline: Pipeline) -> None:
        """Run *pipeline* on a daemon thread."""
        self._acquire()
        self._last_session = None
        self._thread = threading.Thread(
            target=self._run_and_release,
            args=(pipeline,),
            name="pipeline-engine",
            daemon=True,
        )
        self._thread.start()

    def wait(self, timeout: float | None = None) -> RunSession | None:
        """Join the thread started by :meth:`start`; return the finished session."""
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                return None
        return self._last_session

    def pause(self) -> None:
        self._pause_gate.close()
        self._log("Engine", "Pipeline paused.")

    def resume(self) -> None:
        self._pause_gate.open()
        self._log("Engine", "Pipeline resumed.")

    def cancel(self) -> None:
        """Request cancellation; running subprocesses are killed promptly."""
        self._cancel_event.set()
        self._pause_gate.open()  # unblock if paused

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run(self, pipeline: Pipeline) -> RunSession:
        """Execute *pipeline* until it reaches a terminal status.

        Pipeline faults never propagate: an unexpected exception ends the
        session ``failed`` and cancellation ends it ``aborted``. Raises
        ``RuntimeError`` only if this engine is already running.
        """
        self._acquire()
        return self._run_and_release(pipeline)

    def _acquire(self) -> None:
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("Pipeline engine is already running")
        self._cancel_event.clear()
        self._pause_gate.open()

    def _run_and_release(self, pipeline: Pipeline) -> RunSession:
        try:
            self._cost = CostTracker()
            session = RunSession(pipeline_name=pipeline.name)
            self._current_session = session
            started = time.monotonic()

            try:
                self._run_iterations(pipeline, session)
            except PipelineCancelled:
                self._finish(session, RunStatus.ABORTED, "Pipeline cancelled by user.")
            except Exception as exc:
                logger.exception("Pipeline '%s' failed with an unexpected error", pipeline.name)
                self._finish(session, RunStatus.FAILED, f"Pipeline error: {exc}")

            if session.status == RunStatus.RUNNING:  # pragma: no cover - loop always sets a status
                self._finish(session, RunStatus.FAILED, "Pipeline stopped without a result.")
            session.end_time = utc_now_iso()
            session.cost = self._cost.info
            self._log_summary(session, time.monotonic() - started)
            self._last_session = session
            return session
        finally:
            self._current_session = None
            self._run_lock.release()

    def _run_iterations(self, pipeline: Pipeline, session: RunSession) -> None:
        unlimited = pipeline.is_unlimited
        cap = 0 if unlimited else pipeline.max_iterations

        self._notify("on_status", RunStatus.RUNNING)
        self._log("Engine", f"Starting pipeline: {pipeline.name}")
        self._log("Engine", f"Target: {pipeline.target_project_path}")
        self._log(
            "Engine",
            "Max iterations: unlimited (regression safety net active)"
            if unlimited
            else f"Max iterations: {cap}",
        )

        number = 0
        while unlimited or number < cap:
            number += 1
            self._checkpoint()
            iteration_started = time.monotonic()
            iteration = Iteration(number=number)

            self._notify("on_iteration", number, cap)
            self._log("Engine", f"=== Iteration {number} ===" if unlimited else f"=== Iteration {number}/{cap} ===")

            aborted, step_data = self._run_steps(pipeline, iteration)
            # Cancel may have killed the last step.
            self._checkpoint()

            self._set_phase("Checking results...")
            iteration.marker_results = evaluate_markers(
                pipeline.markers,
                step_data,
                pipeline.target_project_path,
            )
            self._notify("on_markers", list(iteration.marker_results))
            self._log_markers(iteration.marker_results)

            history = [*session.iterations, iteration]
            if iteration.passed_count == len(iteration.marker_results) and not aborted:
                self._append(session, iteration, iteration_started)
                self._finish(session, RunStatus.SUCCEEDED, "All markers passed! Pipeline succeeded.")
                return

            if not unlimited and number == cap:
                self._append(session, iteration, iteration_started)
                self._finish(session, RunStatus.FAILED, "Max iterations reached. Pipeline failed.")
                return

            if is_regressing(
                history,
                window=self.settings.regression_window,
                consecutive=self.settings.regression_consecutive,
            ):
                self._append(session, iteration, iteration_started)
                self._notify("on_regression", True)
                self._finish(
                    session,
                    RunStatus.ABORTED,
                    f"WARNING: Regression detected (pass counts {pass_count_trend(history)}). Aborting.",
                )
                return

            self._set_phase("Agent is fixing code...")
            self._checkpoint()
            analysis, changes = self._healing_loop.heal(
                pipeline,
                iteration,
                list(session.iterations),
                session.transcript,
                cancel_event=self._cancel_event,
            )
            iteration.analysis = analysis
            iteration.changes_made = changes
            self._append(session, iteration, iteration_started)
            self._set_phase("Retrying...")

    def _run_steps(self, pipeline: Pipeline, iteration: Iteration) -> tuple[bool, dict[str, str]]:
        """Run every step; the flag is True when an abort-on-failure step failed."""
        self._set_phase("Running steps...")
        step_data: dict[str, str] = {}
        for step in pipeline.steps:
            self._checkpoint()
            result = self._step_executor.execute(
                step,
                step_data,
                pipeline.target_project_path,
                cancel_event=self._cancel_event,
            )
            iteration.step_results.append(result)
            if result.failed and step.fail_behavior == FailBehavior.ABORT:
                self._log("Engine", f"Step '{step.name}' failed with abort behavior; stopping iteration")
                return True, step_data
        return False, step_data

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checkpoint(self) -> None:
        self._pause_gate.wait(self._cancel_event)

    @staticmethod
    def _append(session: RunSession, iteration: Iteration, started: float) -> None:
        iteration.duration_seconds = time.monotonic() - started
        session.iterations.append(iteration)

    def _finish(self, session: RunSession, status: RunStatus, message: str) -> None:
        session.status = status
        self._log("Engine", message)
        self._notify("on_status", status)

    def _set_phase(self, phase: str) -> None:
        self._notify("on_phase", phase)

    def _log_markers(self, results: Sequence[MarkerResult]) -> None:
        passed = sum(1 for result in results if result.passed)
        self._log("Engine", f"Markers: {passed}/{len(results)} passed")
        for result in results:
            status = "PASS" if result.passed else "FAIL"
            self._log(
                "Engine",
                f"  [{status}] {result.marker_name}: {result.actual_value} "
                f"(target: {result.operator.value} {result.expected_value})",
            )

    def _log_summary(self, session: RunSession, elapsed: float) -> None:
        parts = [
            f"Run {session.id} {session.status.value}",
            f"{len(session.iterations)} iteration(s)",
            f"{elapsed:.1f}s",
        ]
        cost = session.cost.summary()
        if cost:
            parts.append(cost)
        self._log("Engine", " | ".join(parts))

    def _handle_agent_event(self, event: AgentEvent) -> None:
        self._notify("on_agent_event", event)
        info = self._cost.record_event(event)
        if info is not None:
            self._notify("on_cost", info)

    def _log(self, source: str, message: str) -> None:
        logger.info("[%s] %s", source, message)
        self._notify("on_log", source, message)

    def _notify(self, method: str, *args: object) -> None:
        try:
            getattr(self.listener, method)(*args)
        except Exception:
            logger.exception("Engine listener %s failed; continuing", method)
