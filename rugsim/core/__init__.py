"""rugsim.core

Core primitives.

If a module needs to exist, it should probably depend only on this package.
"""

from .bus import EventBus, Priority, Subscription
from .config import Config
from .database import Database
from .events import EventType
from .exceptions import RugsimError
from .models import JournalEvent
from .time import ms_to_dt, utc_now

__all__ = [
    "Config",
    "Database",
    "EventBus",
    "EventType",
    "JournalEvent",
    "Priority",
    "RugsimError",
    "Subscription",
    "ms_to_dt",
    "utc_now",
]
