"""
Content Hash Utility
====================
Deterministic hash of a JSON-compatible value, used for change detection.

Rules:
    - Keys are sorted and separators fixed, so logically equal records
      always hash the same regardless of key order on disk.
    - SHA-256 truncated to 16 hex chars for compactness.
"""
import hashlib
import json
from typing import Any


def compute_content_hash(value: Any) -> str:
    """
    Generate a deterministic hash for any JSON-serialisable value.

    Parameters
    ----------
    value : Any
        Dict / list / scalar as loaded from a JSON file.

    Returns
    -------
    str
        16-character hex hash. ``None`` and ``{}`` hash differently.
    """
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
