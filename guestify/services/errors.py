"""Billing error taxonomy — mapped to HTTP status classes by the webhook route."""


class BillingError(Exception):
    """Base class for billing reconciliation errors."""


class MalformedEventError(BillingError):
    """Event envelope or a field the handler needs is missing."""


class MissingEntityError(BillingError):
    """A record the event refers to does not exist locally. Retrying won't create it."""


class UserNotFoundError(MissingEntityError):
    pass


class SubscriptionNotFoundError(MissingEntityError):
    pass


class CheckoutSessionNotFoundError(MissingEntityError):
    pass
