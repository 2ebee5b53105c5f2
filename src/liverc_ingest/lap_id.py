"""Deterministic lap identity."""

import hashlib


def build_lap_id(
    event_id: str, session_id: str, race_id: str, driver_id: str, lap_number: int
) -> str:
    """
    Hash the lap's identifying facts into a stable 64-char hex id.

    Re-importing an unchanged lap yields the same id, so lap writes are
    naturally idempotent.
    """
    material = "|".join([event_id, session_id, race_id, driver_id, str(lap_number)])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
