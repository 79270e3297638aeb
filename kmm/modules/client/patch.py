"""
JSON merge patch (RFC 7386) construction.

Patches are computed as the minimal delta between the last-read object and
its locally modified copy, so concurrent writers touching different fields
of the same object compose instead of overwriting each other.
"""

from typing import Any, Dict

from ..api.models import KubeModel


def json_merge_diff(original: Dict[str, Any], modified: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build the merge patch that turns original into modified.

    Removed keys map to None; lists are replaced as a whole.
    """
    patch: Dict[str, Any] = {}

    for key in original:
        if key not in modified:
            patch[key] = None

    for key, value in modified.items():
        if key not in original:
            patch[key] = value
            continue

        old = original[key]
        if isinstance(old, dict) and isinstance(value, dict):
            nested = json_merge_diff(old, value)
            if nested:
                patch[key] = nested
        elif old != value:
            patch[key] = value

    return patch


def merge_from(
    original: KubeModel, modified: KubeModel, optimistic_lock: bool = False
) -> Dict[str, Any]:
    """
    Merge patch from original to modified.

    Args:
        original: Object as last read from the API server
        modified: Locally modified copy
        optimistic_lock: Embed the original resourceVersion so a stale write
            is rejected with a conflict

    Returns:
        Patch body; empty when nothing changed
    """
    patch = json_merge_diff(original.to_dict(), modified.to_dict())

    if patch and optimistic_lock:
        resource_version = original.metadata.resource_version
        if resource_version:
            patch.setdefault("metadata", {})["resourceVersion"] = resource_version

    return patch
