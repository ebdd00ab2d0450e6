"""
Domain exceptions raised by the UAT services.

The services never build HTTP responses; they raise one of these and the
blueprint handlers in ``uathub.utils.errors`` turn it into a JSON error:

    NotFoundError        404   record missing, or outside the caller's session
    ValidationError      422   business rule rejected the input (``details``)
    ConflictError        409   duplicate, or the one-active-run rule lost a race
    AuthenticationError  401   no internal user on an internal endpoint
    AuthorizationError   403   actor known, capability missing
"""


class UatHubError(Exception):
    """Base class for every domain exception."""


class NotFoundError(UatHubError):
    """A lookup found nothing the caller is allowed to see.

    Portal token failures use this too, with ``message="Invalid access
    link"``, so an unknown token and a closed session look the same.
    ``resource_id`` goes to the logs only; ``public_message`` is what the
    client receives.
    """

    def __init__(self, resource, resource_id=None, message=None):
        self.resource = resource
        self.resource_id = resource_id
        self.public_message = message or f"{resource} not found"
        where = f" id={resource_id}" if resource_id is not None else ""
        super().__init__(f"{resource}{where} not found")


class ValidationError(UatHubError):
    """Input rejected before any row was changed.

    ``details`` maps field name to a short reason, e.g. ``{"notes": "required"}``.
    """

    def __init__(self, message, details=None):
        self.details = details or {}
        super().__init__(message)


class ConflictError(UatHubError):
    def __init__(self, resource, field, value=None):
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class AuthenticationError(UatHubError):
    pass


class AuthorizationError(UatHubError):
    pass
