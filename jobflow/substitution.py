# jobflow/substitution.py
"""Placeholder substitution, typed value parsing and stage conditions.

Everything here is pure: no storage, no identity, no logging side effects.
"""
from __future__ import annotations

import json
import re
from typing import Any, Mapping, Optional, Union

from .models import StageCondition, StageExecution, StageStatus

PLACEHOLDER_RE = re.compile(r"\$\{([^}]*)\}")

_INT_RE = re.compile(r"[+-]?\d+")
_FLOAT_RE = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def format_value(value: Any) -> str:
    """Render a parameter/variable value the way it appears in step text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def substitute(
    text: Optional[str],
    parameters: Optional[Mapping[str, Any]],
    variables: Optional[Mapping[str, Any]],
) -> Optional[str]:
    """Replace ``${key}`` tokens with parameter / variable values.

    A variable id shadows a parameter with the same id. Tokens whose key is
    neither a parameter nor a variable are left as they are.
    """
    if not text:
        return text

    parameters = parameters or {}
    variables = variables or {}

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables:
            return format_value(variables[key])
        if key in parameters:
            return format_value(parameters[key])
        return match.group(0)

    return PLACEHOLDER_RE.sub(_replace, text)


def parse_typed_value(raw: Any) -> Any:
    """Infer a number, boolean, JSON object/array or string from user input."""
    if not isinstance(raw, str):
        return raw
    if raw == "":
        return ""

    stripped = raw.strip()
    if _INT_RE.fullmatch(stripped):
        return int(stripped)
    if _FLOAT_RE.fullmatch(stripped):
        return float(stripped)

    lowered = stripped.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False

    if stripped[:1] in ("{", "["):
        try:
            parsed = json.loads(stripped)
        except ValueError:
            return raw
        if isinstance(parsed, (dict, list)):
            return parsed

    return raw


def evaluate_stage_condition(
    condition: Union[StageCondition, str, None],
    predecessor: Optional[StageExecution],
) -> bool:
    """Decide whether a stage may run given its predecessor stage.

    Unknown or empty conditions evaluate to True.
    """
    parsed = StageCondition.parse(condition)
    if parsed is None or parsed is StageCondition.ALWAYS:
        return True
    if parsed is StageCondition.SUCCEEDED:
        return predecessor is None or predecessor.status == StageStatus.COMPLETED
    # failed()
    return predecessor is not None and predecessor.status == StageStatus.FAILED
