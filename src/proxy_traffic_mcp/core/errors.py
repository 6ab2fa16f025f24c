from __future__ import annotations


class TrafficError(Exception):
    """Base class for every error raised by the core."""


class SourceError(TrafficError):
    """
    The connection source could not deliver a usable snapshot.

    Covers network failures, non 2xx responses and malformed payloads.
    The poller treats it as transient and skips the cycle.
    """


class StoreError(TrafficError):
    """A SQLite operation failed and its transaction was rolled back."""


class MergeError(StoreError):
    """
    Merge/archive did not complete.

    The caller must not assume any side effect happened or did not happen.
    """


class InvalidMergeRequest(TrafficError, ValueError):
    """Merge parameters were rejected before touching any store."""
