from __future__ import annotations

from typing import Any

WILDCARD_MODEL = "*"


def parse_models_string(value: str | None) -> list[str]:
    if not value or not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def coerce_models_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return ",".join(parse_models_string(value))
    if isinstance(value, (list, tuple, set)):
        cleaned: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            item = item.strip()
            if item and item not in cleaned:
                cleaned.append(item)
        return ",".join(cleaned)
    raise ValueError("Expected models to be a comma-separated string or a list.")


def is_model_allowed(model: str, allowed_models: str | None) -> bool:
    """An empty allow-list admits every model, as does an explicit ``*``."""
    allowed = parse_models_string(allowed_models)
    if not allowed:
        return True
    return model in allowed or WILDCARD_MODEL in allowed
