"""Presence roster merge and TTL eviction.

The roster is a plain list of ``PresenceEntry`` kept in insertion order
inside the Collaboration aggregate. There is no background sweeper: every
read and every write filters out stale entries, so the persisted roster
cleans itself. Each access is O(n) in roster size, which is fine for the
handful of collaborators on one chat.
"""
from datetime import datetime, timedelta
from typing import List, Optional

from .schemas import Cursor, PresenceEntry

DEFAULT_TTL = timedelta(minutes=5)


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value & 0x80000000 else value


def generate_user_color(email: str) -> str:
    """Deterministic HSL highlight color for a user, derived from the email.

    Same arithmetic as the web client: the shift wraps to 32 bits but the
    running sum does not, and the hue keeps the sign of the hash (CSS wraps
    negative hues).
    """
    h = 0
    for ch in email:
        h = ord(ch) + (_int32(_int32(h) << 5) - h)
    hue = abs(h) % 360
    return f"hsl({-hue if h < 0 else hue}, 70%, 60%)"


def is_stale(entry: PresenceEntry, now: datetime, ttl: timedelta = DEFAULT_TTL) -> bool:
    return entry.lastActive <= now - ttl


def evict_stale(
    entries: List[PresenceEntry],
    now: datetime,
    ttl: timedelta = DEFAULT_TTL,
) -> List[PresenceEntry]:
    """Return the entries still inside the TTL window, order preserved."""
    return [e for e in entries if not is_stale(e, now, ttl)]


def upsert_entry(
    entries: List[PresenceEntry],
    email: str,
    name: str,
    now: datetime,
    cursor: Optional[Cursor] = None,
    ttl: timedelta = DEFAULT_TTL,
) -> List[PresenceEntry]:
    """Replace the entry for ``email`` in place, or append one; then evict.

    ``lastActive`` is always set to ``now``. Matching is by email, never by
    list position, so entries for other identities are left untouched.
    """
    entry = PresenceEntry(
        email=email,
        name=name,
        lastActive=now,
        cursor=cursor or Cursor(position=0, color=generate_user_color(email)),
    )
    merged = list(entries)
    for i, existing in enumerate(merged):
        if existing.email == email:
            merged[i] = entry
            break
    else:
        merged.append(entry)
    return evict_stale(merged, now, ttl)


def remove_entry(entries: List[PresenceEntry], email: str) -> List[PresenceEntry]:
    return [e for e in entries if e.email != email]
