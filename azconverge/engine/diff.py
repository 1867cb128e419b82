"""Drift detection between desired properties and provider-reported state.

Comparison is a recursive subset match: every key the declaration sets must
match the remote value, while fields the provider adds on its own
(ids, status, defaults) are ignored.  Lists must have the same length and
match element-wise.
"""

from __future__ import annotations

from typing import Any


def drifted_paths(desired: Any, actual: Any, path: str = "") -> list[str]:
    """Return the property paths where ``actual`` does not satisfy ``desired``."""
    if isinstance(desired, dict):
        if not isinstance(actual, dict):
            return [path or "<root>"]
        changes: list[str] = []
        for key, value in desired.items():
            child = f"{path}.{key}" if path else str(key)
            if key not in actual:
                if value is None:
                    continue
                changes.append(child)
                continue
            changes.extend(drifted_paths(value, actual[key], child))
        return changes
    if isinstance(desired, (list, tuple)):
        if not isinstance(actual, (list, tuple)) or len(desired) != len(actual):
            return [path or "<root>"]
        changes = []
        for index, (want, have) in enumerate(zip(desired, actual, strict=True)):
            changes.extend(drifted_paths(want, have, f"{path}[{index}]"))
        return changes
    if _scalar_equal(desired, actual):
        return []
    return [path or "<root>"]


def is_drifted(desired: Any, actual: Any) -> bool:
    return bool(drifted_paths(desired, actual))


def _scalar_equal(desired: Any, actual: Any) -> bool:
    if desired == actual:
        return True
    # ARM normalises locations and some enums to lower case.
    if isinstance(desired, str) and isinstance(actual, str):
        return desired.lower() == actual.lower()
    # Numbers sometimes round-trip as strings (k8s ports, ARM counts).
    if isinstance(desired, (int, float)) and isinstance(actual, str) and not isinstance(desired, bool):
        return str(desired) == actual
    return False
