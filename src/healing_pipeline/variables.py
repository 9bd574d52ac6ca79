"""``{{key}}`` placeholder substitution for step commands and paths."""

from __future__ import annotations

import re
from collections.abc import Mapping

_PLACEHOLDER_RE = re.compile(r"\{\{([^{}]+)\}\}")


def resolve_variables(template: str, data: Mapping[str, str]) -> str:
    """Replace ``{{key}}`` with ``data[key]``.

    This is literal substitution, not a template language: there is no
    escaping, no filters and no whitespace trimming inside the braces.
    Placeholders whose key is missing from *data* are left verbatim.
    """
    if not template or "{{" not in template:
        return template or ""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in data:
            return data[key]
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


def find_placeholders(template: str) -> list[str]:
    """Return placeholder keys referenced by *template*, in order of appearance."""
    return [match.group(1) for match in _PLACEHOLDER_RE.finditer(template or "")]
