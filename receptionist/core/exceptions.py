"""Exception hierarchy for the call relay.

Scheduling outcomes (slot taken, nothing to cancel) are never raised; they are
returned as result models so the model can speak them back to the caller.
"""


class RelayError(Exception):
    """Base class for call relay errors."""


class ConfigurationError(RelayError):
    """Missing credentials or tenant configuration.

    Only raised while a call session is being established.
    """


class TenantNotFoundError(ConfigurationError):
    """No active tenant matches the call metadata."""


class ModelSessionError(RelayError):
    """The conversational model connection failed or is not open."""


class MalformedMessageError(RelayError):
    """An inbound provider message or model event could not be parsed."""


class InvalidStateTransitionError(RelayError):
    """A call session was asked to move to a state it cannot reach."""
