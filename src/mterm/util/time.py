from __future__ import annotations

from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def iso_from_epoch(ts: float) -> str:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except Exception:
        return ""


def compact_stamp() -> str:
    """Filesystem-safe UTC timestamp (used in generated workspace names)."""
    return utc_now_iso().replace(":", "-").replace(".", "-")

