"""Short stable identifiers for captured artifacts."""

import hashlib
from typing import Any


def _to_str(v: Any) -> str:
    return "" if v is None else str(v)


def make_snapshot_id(label: str, elapsed_ms: float, *parts: Any) -> str:
    """Make a short id for a heap snapshot.

    blake2s with a 10-byte digest (20 hex chars) over the joined fields.
    """
    base = "|".join([_to_str(label), f"{elapsed_ms:.3f}"] + [_to_str(p) for p in parts])
    return hashlib.blake2s(base.encode("utf-8"), digest_size=10).hexdigest()
