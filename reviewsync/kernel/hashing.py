from __future__ import annotations

import hashlib
import json
from typing import Any


def sha256_hexdigest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json(value: Any) -> str:
    """Serialize to JSON with sorted keys and no insignificant whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def build_identity_hash(context: dict[str, Any] | None) -> str:
    """Fingerprint the brand-voice context a draft was generated with.

    An absent or empty context hashes to the literal "none" so rows written
    before any settings existed compare equal to rows written without them.
    """
    if not context:
        return "none"
    return sha256_hexdigest(canonical_json(context).encode("utf-8", errors="ignore"))


