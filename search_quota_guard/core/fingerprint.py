"""
Request parameter fingerprinting.

Canonical serialization used for duplicate detection and cache keys.
"""

import json
from typing import Any, Mapping


def compute_fingerprint(parameters: Mapping[str, Any]) -> str:
    """Return a canonical string for a set of request parameters.

    Keys are sorted so semantically identical requests collide regardless
    of parameter order. Parameters set to None are dropped, matching how
    they are left out of the outbound query string.

    Args:
        parameters: Request parameters

    Returns:
        Compact JSON string with sorted keys
    """
    present = {key: value for key, value in parameters.items() if value is not None}
    return json.dumps(present, sort_keys=True, separators=(",", ":"), default=str)
