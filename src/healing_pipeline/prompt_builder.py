"""Assemble the healing prompt handed to the coding agent.

The prompt is the agent's only view of the run: what failed this iteration,
what was already tried, and which files it may touch. It is kept inside a
character budget (about 20K tokens at the default) by shrinking the noisiest
sections first and, as a last resort, cutting the middle.
"""

from __future__ import annotations

from collections.abc import Sequence

from healing_pipeline.schemas import (
    AccessLevel,
    Iteration,
    MarkerResult,
    Pipeline,
    TranscriptEntry,
)

CHAR_BUDGET = 80_000
TRUNCATION_MARKER = "\n\n... [middle content truncated to fit token budget] ...\n\n"

_OUTPUT_CAP = 4000
_ERROR_CAP = 2000
_OUTPUT_CAP_CROWDED = 2000
_ERROR_CAP_CROWDED = 1000
_CROWDED_AFTER = 3  # previous iterations
_FULL_DETAIL_ITERATIONS = 2
_ANALYSIS_PREVIEW = 500
_TRANSCRIPT_ENTRIES = 2
_RESPONSE_PREVIEW = 800
_RESPONSE_PREVIEW_TIGHT = 400

_FRAMING = """\
You are a self-healing meta-engineer. Your job is to make all pipeline markers pass.
You have full access to read, write, edit, and run commands in the target project.

If a step failed because required files/projects don't exist yet (e.g. a test runner,
CLI harness, comparison script), CREATE THEM. Read the project context below for details
on what to create. If code has bugs, fix them. If tests fail, fix the code being tested.
"""

_INSTRUCTIONS = """\
## INSTRUCTIONS
1. Review the full history above. Do NOT repeat changes that already failed
2. If a previous change caused regression, consider reverting it
3. Build on changes that showed improvement
4. Analyze the FAILING markers and step outputs for THIS iteration carefully
5. Read the actual error messages; they tell you exactly what's wrong
6. Read relevant source files in the target project before editing
7. Make targeted, minimal edits to fix the specific failures
8. After editing, verify your fix makes sense (re-read the file if needed)
9. Explain what you changed and why in 2-3 sentences
10. Predict whether markers will pass after your changes

## IMPORTANT:
- Fix the ROOT CAUSE, not symptoms. If a build fails, read the error and fix the actual code.
- Do NOT add try/catch or error suppression to hide failures.
- Do NOT delete tests to make them pass. Fix the code the tests are testing.
- If you see the same error as a previous iteration, your last fix didn't work; try a different approach.
- Keep changes minimal. Only touch files that are directly related to the failure."""


def _marker_line(result: MarkerResult) -> str:
    status = "PASS" if result.passed else "FAIL"
    return (
        f"  - [{status}] {result.marker_name}: expected {result.operator.value} "
        f"{result.expected_value}, got {result.actual_value}"
    )


def _tail(text: str, limit: int) -> str:
    return text[-limit:] if len(text) > limit else text


def _preview(text: str, limit: int) -> str:
    return text[:limit] + "..." if len(text) > limit else text


def truncate_middle(text: str, budget: int = CHAR_BUDGET) -> str:
    """Cut the middle of *text* so the result is at most *budget* chars.

    One third of the space goes to the head (framing, current markers) and
    the rest to the tail (rules and instructions), joined by
    :data:`TRUNCATION_MARKER`.
    """
    if len(text) <= budget:
        return text
    available = budget - len(TRUNCATION_MARKER)
    if available <= 0:
        return text[:max(0, budget)]
    head = available // 3
    tail = available - head
    return text[:head] + TRUNCATION_MARKER + text[-tail:]


def build_healing_prompt(
    pipeline: Pipeline,
    current_iteration: Iteration,
    previous_iterations: Sequence[Iteration],
    transcript: Sequence[TranscriptEntry],
    *,
    char_budget: int = CHAR_BUDGET,
) -> str:
    """Build the prompt for healing *current_iteration*."""
    lines: list[str] = [_FRAMING]

    if pipeline.is_unlimited:
        iteration_text = f"{current_iteration.number} (unlimited)"
    else:
        iteration_text = f"{current_iteration.number} / {pipeline.max_iterations}"
    lines.append(f"Pipeline: {pipeline.name} - {pipeline.description}")
    lines.append(f"Target Project: {pipeline.target_project_path}")
    lines.append(f"Iteration: {iteration_text}")
    lines.append("")

    lines.append("## MARKER RESULTS (THIS ITERATION)")
    lines.extend(_marker_line(result) for result in current_iteration.marker_results)
    lines.append("")

    crowded = len(previous_iterations) > _CROWDED_AFTER
    output_cap = _OUTPUT_CAP_CROWDED if crowded else _OUTPUT_CAP
    error_cap = _ERROR_CAP_CROWDED if crowded else _ERROR_CAP

    lines.append("## STEP OUTPUTS (THIS ITERATION)")
    for step in current_iteration.step_results:
        lines.append(f"### Step: {step.step_name} (exit code: {step.exit_code})")
        if step.output.strip():
            lines.extend(["```", _tail(step.output, output_cap).rstrip(), "```"])
        if step.error.strip():
            lines.extend(["Stderr:", "```", _tail(step.error, error_cap).rstrip(), "```"])
    lines.append("")

    if previous_iterations:
        lines.append("## PREVIOUS ITERATIONS")
        summarize_up_to = max(0, len(previous_iterations) - _FULL_DETAIL_ITERATIONS)
        for idx, prev in enumerate(previous_iterations):
            markers_line = f"Markers: {prev.passed_count}/{len(prev.marker_results)} passed"
            if idx < summarize_up_to:
                lines.append(f"### Iteration {prev.number} (summary)")
                lines.append(markers_line)
                if prev.changes_made:
                    lines.append(f"Changes: {', '.join(prev.changes_made)}")
            else:
                lines.append(f"### Iteration {prev.number}")
                lines.append(markers_line)
                lines.extend(_marker_line(result) for result in prev.marker_results)
                if prev.analysis:
                    lines.append(f"Your analysis: {_preview(prev.analysis, _ANALYSIS_PREVIEW)}")
                if prev.changes_made:
                    lines.append("Changes you made:")
                    lines.extend(f"  - {change}" for change in prev.changes_made)
            lines.append("")

    if transcript:
        lines.append("## PREVIOUS CLAUDE RESPONSES")
        start = max(0, len(transcript) - _TRANSCRIPT_ENTRIES)
        if start:
            plural = "s" if start != 1 else ""
            lines.append(f"({start} earlier interaction{plural} omitted for brevity)")
        so_far = len("\n".join(lines))
        limit = _RESPONSE_PREVIEW_TIGHT if so_far > char_budget // 2 else _RESPONSE_PREVIEW
        for number, entry in enumerate(transcript[start:], start=start + 1):
            lines.append(f"--- Iteration {number} response ---")
            lines.append(_preview(entry.response, limit))
            lines.append("")

    lines.extend(_file_access_section(pipeline))

    if pipeline.healing_prompt_template.strip():
        lines.append("## PROJECT-SPECIFIC CONTEXT")
        lines.append(pipeline.healing_prompt_template)
        lines.append("")

    lines.append(_INSTRUCTIONS)
    return truncate_middle("\n".join(lines) + "\n", char_budget)


def _file_access_section(pipeline: Pipeline) -> list[str]:
    def _patterns(level: AccessLevel) -> list[str]:
        return [rule.path_pattern for rule in pipeline.file_access_rules if rule.access_level == level]

    editable = _patterns(AccessLevel.EDITABLE)
    read_only = _patterns(AccessLevel.READ_ONLY)
    excluded = _patterns(AccessLevel.EXCLUDED)
    return [
        "## FILE ACCESS RULES",
        f"Editable: {', '.join(editable) if editable else '**/* (all files)'}",
        f"Read-only: {', '.join(read_only) if read_only else '(none)'}",
        f"Excluded (do NOT touch): {', '.join(excluded) if excluded else '(none)'}",
        "",
    ]
