from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from typing import Any


TEMPLATE_VALUE_RE = re.compile(r"^\{\{([^{}]+)\}\}$")
TEMPLATE_INLINE_RE = re.compile(r"\{\{([^{}]+)\}\}")


def resolve_path(path: str, context: Mapping[str, Any]) -> object:
    current: object = context
    for part in [piece.strip() for piece in path.split(".") if piece.strip()]:
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
            continue
        if isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return None
            current = current[idx]
            continue
        return None
    return current


def render_template(template: str, context: Mapping[str, Any]) -> str:
    """Substitute every ``{{path}}`` in ``template``; missing paths render empty."""

    def _replace(match: re.Match[str]) -> str:
        value = resolve_path(match.group(1).strip(), context)
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    return TEMPLATE_INLINE_RE.sub(_replace, template)


def resolve_value(value: object, context: Mapping[str, Any]) -> object:
    if isinstance(value, str):
        match = TEMPLATE_VALUE_RE.fullmatch(value.strip())
        if match:
            return resolve_path(match.group(1).strip(), context)
        if "{{" in value and "}}" in value:
            return render_template(value, context)
        return value

    if isinstance(value, dict):
        return {key: resolve_value(item, context) for key, item in value.items()}

    if isinstance(value, list):
        return [resolve_value(item, context) for item in value]

    return value
