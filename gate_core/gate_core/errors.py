"""Exception hierarchy for the metered-access core."""

from __future__ import annotations


class GateError(Exception):
    """Base class for all metered-access errors."""


class ConfigurationError(GateError):
    """A limit, allowance or timeout is missing or out of range."""


class LedgerUnavailableError(GateError):
    """The usage ledger could not be read or written.

    Raised for storage errors and timeouts alike.  The access gate treats
    this as a denial.
    """


class SubscriptionCacheUnavailableError(GateError):
    """The cached subscription state could not be read."""


class ProviderUnavailableError(GateError):
    """The payment provider could not be reached or returned an error."""


class CustomerLinkConflictError(GateError):
    """The identity or the provider customer is already linked elsewhere."""


class WebhookSignatureError(GateError):
    """A webhook payload failed signature verification."""


class FavoritesUnavailableError(GateError):
    """Saved stories could not be read or written."""
