"""Exception types raised by the mailbox.

Normal operating conditions (dedup rejection, expiry, eviction, unknown
ids) are never errors; only bad input and bad configuration raise.
"""
from __future__ import annotations


class MailboxError(Exception):
    """Base class for every error raised by this package."""


class MessageValidationError(MailboxError, ValueError):
    """A candidate message is malformed and was not stored."""


class ConfigurationError(MailboxError, ValueError):
    """A store, policy or dispatcher was configured with invalid values."""


class DuplicateObserverError(MailboxError, KeyError):
    """An observer with the same id is already registered."""

    def __init__(self, observer_id: str) -> None:
        super().__init__(observer_id)
        self.observer_id = observer_id

    def __str__(self) -> str:
        return f'Observer with id "{self.observer_id}" already registered'
