class GatewayError(Exception):
    """Base exception for the gateway."""


class ConfigurationError(GatewayError):
    """Invalid servers, clauses or destinations."""


class TransportError(GatewayError):
    """Connect, read or write failure on a server connection."""


class FrameError(TransportError):
    """Malformed AMI block. Ends the stream so framing can resynchronize."""

    def __init__(self, *args):
        super().__init__(*args)
        self.blocks = []


class AuthError(GatewayError):
    """The server rejected the login or did not answer it in time."""


class RuleEvaluationError(GatewayError):
    """A predicate failed while evaluating an event."""


class SinkError(GatewayError):
    """A destination could not store a batch."""
