from __future__ import annotations


class BridgeError(Exception):
    pass


class PersistenceError(BridgeError):
    """A relational failure inside an atomic unit; the unit was rolled back."""


class ConflictError(PersistenceError):
    """The store rejected a write on a uniqueness constraint."""
