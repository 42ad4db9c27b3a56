"""Shared exception hierarchy for quota services."""

# ── Base ──────────────────────────────────────────────────────────────────────


class QuotaError(Exception):
    """Base exception for quota accounting errors."""


# ── Input ─────────────────────────────────────────────────────────────────────


class ValidationError(QuotaError):
    """Input rejected before any mutation."""


class NotFoundError(QuotaError):
    """Referenced scheme, payment method, rule or transaction does not exist."""


class ReferenceNotFoundError(ValidationError, NotFoundError):
    """An id referenced from a request body does not exist."""


# ── Persistence ───────────────────────────────────────────────────────────────


class PersistenceError(QuotaError):
    """Database failure mid-operation; the enclosing transaction is rolled back."""


class ConcurrentUpdateError(PersistenceError):
    """A quota tracking row was changed by another writer."""
