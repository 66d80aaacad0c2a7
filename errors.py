# errors.py


class UbuntuEatsError(Exception):
    """Base class for every error raised by the core modules."""


class NotFound(UbuntuEatsError):
    pass


class PermissionDenied(UbuntuEatsError):
    pass


class ValidationError(UbuntuEatsError):
    pass


class InvalidTransition(UbuntuEatsError):
    """A lifecycle precondition did not hold. Nothing was written."""

    def __init__(self, message, current_status=None):
        super().__init__(message)
        self.current_status = current_status


class ListingUnavailable(InvalidTransition):
    """The listing was claimed (or withdrawn) by someone else first."""


class TransitionFailed(UbuntuEatsError):
    """A write inside a transition failed; the whole transition was rolled back."""


class CollaboratorUnavailable(UbuntuEatsError):
    """The store or an endpoint could not be reached. Safe to retry."""


class ServiceError(UbuntuEatsError):
    """An endpoint answered but reported success == False."""
