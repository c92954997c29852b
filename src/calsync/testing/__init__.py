"""Test support utilities for the calsync package.

Free of pytest fixtures so they can be imported from any test module; the
fixtures wrapping them live in ``tests/conftest.py``.
"""

from __future__ import annotations

from calsync.testing.fakes import (
    NOW,
    FixedClock,
    ScriptedCalendarClient,
    credential,
    fetched,
    google_event,
)

__all__ = [
    "NOW",
    "FixedClock",
    "ScriptedCalendarClient",
    "credential",
    "fetched",
    "google_event",
]
