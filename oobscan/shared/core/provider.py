from __future__ import annotations

from typing import Any

from oobscan.shared.core.constants import ProviderKind


SUPPORTED_PROVIDERS: set[str] = {kind.value for kind in ProviderKind}


def normalize_provider(value: Any) -> str:
    """Return a canonical provider key or empty string when invalid/missing."""
    enum_value = getattr(value, "value", None)
    if isinstance(enum_value, str):
        value = enum_value
    normalized = str(value or "").strip().lower()
    return normalized if normalized in SUPPORTED_PROVIDERS else ""
