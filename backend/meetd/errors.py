class MeetdError(Exception):
    """Base class for failures surfaced to callers as ``{"error": ...}``."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidSlot(MeetdError):
    status_code = 400


class InvalidDuration(InvalidSlot):
    status_code = 400


class MalformedProposal(MeetdError):
    status_code = 400


class SignatureInvalid(MeetdError):
    status_code = 400


class ReplayDetected(MeetdError):
    status_code = 409


class InvalidTransition(MeetdError):
    status_code = 409


class Conflict(MeetdError):
    status_code = 409


class NotFound(MeetdError):
    status_code = 404


class Unauthorized(MeetdError):
    status_code = 401


class Forbidden(MeetdError):
    status_code = 403


class UpstreamUnavailable(MeetdError):
    """Calendar provider or storage backend could not be reached."""

    status_code = 503


class InvalidRequest(MeetdError):
    status_code = 400
