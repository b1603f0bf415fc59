"""Exception taxonomy for the billing services."""


class BillingError(Exception):
    """Base class for errors surfaced by the billing services."""

    status_code = 500


class NotFound(BillingError):
    status_code = 404


class InvalidStateTransition(BillingError):
    status_code = 409


class ConcurrentUpdate(BillingError):
    """An invoice kept changing underneath a read-modify-write."""

    status_code = 409


class ExternalServiceFailure(BillingError):
    """A payment processor or notification provider call failed."""

    status_code = 502


class MissingTenantContext(BillingError):
    status_code = 422
