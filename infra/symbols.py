"""Asset identifier normalization and lookup-candidate utilities.

Position files are frequently hand-edited, so identifiers can carry invisible
characters (BOM, zero-width spaces, CR/LF) that break lookups against market
data vendors. Everything that keys state by asset goes through
`normalize_asset_id` so the store, the guards and the signal table agree.
"""

from __future__ import annotations

import re
from typing import Any, List

PUMP_SUFFIX = "pump"

# Control characters, zero-width / bidi marks, word joiners, BOM and NBSP.
_INVISIBLE_RE = re.compile(
    "[\u0000-\u001f\u007f-\u009f\u200b-\u200f\u202a-\u202e\u2060-\u206f\ufeff\u00a0]"
)


def strip_invisible(value: Any) -> str:
    """Remove invisible/control characters; visible characters are never touched."""
    if value is None:
        return ""
    return _INVISIBLE_RE.sub("", str(value)).strip()


def normalize_asset_id(value: Any) -> str:
    """Return the canonical identifier used as the state key (empty if unusable)."""
    return strip_invisible(value)


def lookup_candidates(asset_id: Any) -> List[str]:
    """Identifiers to try against external sources, raw form first.

    Launchpad identifiers sometimes carry a vanity `pump` suffix that data
    vendors index without, so the stripped form is tried second.
    """

    raw = normalize_asset_id(asset_id)
    if not raw:
        return []
    candidates = [raw]
    if raw.lower().endswith(PUMP_SUFFIX):
        stripped = strip_invisible(raw[: -len(PUMP_SUFFIX)])
        if stripped and stripped != raw:
            candidates.append(stripped)
    return candidates


__all__ = ["strip_invisible", "normalize_asset_id", "lookup_candidates", "PUMP_SUFFIX"]
