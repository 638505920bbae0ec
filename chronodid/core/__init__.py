"""chronodid.core

Core primitives: events, journal, projections, time.

If a module needs to exist, it should probably depend only on this package.
"""

from .config import Config
from .database import Database
from .events import EventKind, Position
from .exceptions import ChronodidError
from .time import parse_dt, utc_now

__all__ = [
    "ChronodidError",
    "Config",
    "Database",
    "EventKind",
    "Position",
    "parse_dt",
    "utc_now",
]
