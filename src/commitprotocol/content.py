"""Content references — deterministic digests of specification metadata.

The ledger treats specification and evidence references as opaque strings.
This helper lets a caller derive a stable reference from structured
metadata before handing it over.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping


def content_reference(metadata: Mapping[str, Any]) -> str:
    """SHA-256 hex digest of the metadata's canonical JSON (sorted keys)."""
    canonical = json.dumps(
        dict(metadata), sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
