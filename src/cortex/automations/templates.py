"""``{{name.path}}`` placeholder resolution against a run context.

Resolution is a plain path walk over dicts and lists; there is no
expression evaluation here.
"""

from __future__ import annotations

import json
import re
from typing import Any

from cortex.errors import TemplateResolutionError

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][\w\-]*(?:\.[\w\-]+)*)\s*\}\}")

_MISSING = object()


def lookup_path(context: dict[str, Any], path: str) -> Any:
    """Walk a dotted *path* through *context*.

    Numeric segments index into lists. Raises TemplateResolutionError when any
    segment is absent.
    """
    current: Any = context
    for segment in path.split("."):
        value: Any = _MISSING
        if isinstance(current, dict):
            value = current.get(segment, _MISSING)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index < len(current):
                value = current[index]
        if value is _MISSING:
            raise TemplateResolutionError(f"Unresolved template reference: {{{{{path}}}}}", path)
        current = value
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, default=str)


def resolve_value(value: Any, context: dict[str, Any]) -> Any:
    """Resolve placeholders inside *value*, recursing into dicts and lists.

    A string that is exactly one placeholder resolves to the raw referenced
    value (so a list stays a list). Embedded placeholders are substituted as
    text, with non-string values rendered as JSON.
    """
    if isinstance(value, dict):
        return {k: resolve_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, context) for v in value]
    if not isinstance(value, str) or "{{" not in value:
        return value

    # Exact match: entire value is a single reference
    exact = _PLACEHOLDER_RE.fullmatch(value.strip())
    if exact:
        return lookup_path(context, exact.group(1))

    return _PLACEHOLDER_RE.sub(lambda m: _stringify(lookup_path(context, m.group(1))), value)
