"""Exceptions surfaced to callers of the revision engine."""

from __future__ import annotations


class MedrevError(Exception):
    """Base class for engine errors."""


class NotFound(MedrevError):
    """The referenced case, question or context does not exist."""


class InvalidInput(MedrevError):
    """The request was rejected before any state was written."""


class StoreError(MedrevError):
    """The persistent store failed; the transaction was rolled back."""
