"""rugsim.core.exceptions

Errors are part of the interface.

Trade rejections are not errors. They are results. Only loading, storage and
programmer mistakes raise.
"""

from __future__ import annotations


class RugsimError(Exception):
    """Base exception for rugsim."""


class ConfigError(RugsimError):
    """Configuration file is missing or structurally unreadable."""


class EventStoreError(RugsimError):
    """Journal failures: schema, IO, integrity, or invariants."""


class DedupeConflictError(EventStoreError):
    """Deduplication key reused with different payload."""


class SessionLoadError(RugsimError):
    """A historical session could not be loaded for replay."""


class ReplayCancelled(RugsimError):
    """A replay run was cancelled between events. Partial results are discarded."""


class LedgerError(RugsimError, ValueError):
    """A ledger operation was called with impossible inputs (programmer error)."""
