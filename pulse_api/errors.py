"""Error taxonomy shared by the engine modules.

Engine code raises these; ``main`` maps them onto HTTP responses.
``TransportFailure`` is recorded on the recipient by the dispatcher and never
reaches a caller.
"""


class PulseError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(PulseError):
    status_code = 400


class NotFound(PulseError):
    status_code = 404


class InvalidState(PulseError):
    status_code = 409


class TransportFailure(PulseError):
    """A single message was refused; other recipients are unaffected."""

    status_code = 502


class TransportUnavailable(PulseError):
    """The mail provider cannot be reached at all; the batch must be retried."""

    status_code = 503
