"""Exception types shared across the relay.

Fatal errors (``FetchError``, ``DecryptionError``, a ``StoreError`` while
loading the tracking snapshot) abort a run.  ``NotificationError`` and
per-record ``StoreError`` are isolated to one incident.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by the relay."""


class FetchError(RelayError):
    """The feed was unreachable, answered non-2xx, or returned an unexpected body."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DecryptionError(RelayError):
    """A decode, cipher or parse step of payload decryption failed.

    The original exception is kept on ``cause`` (and ``__cause__``).
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class NotificationError(RelayError):
    """The notification channel rejected a message or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreError(RelayError):
    """A tracking-store read, write, delete or listing failed."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key
