"""Error taxonomy shared by the dispatch engine and its API."""


class DispatchError(Exception):
    """Base class for failures reported to callers."""
    kind = "DispatchError"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class NotFoundError(DispatchError):
    kind = "NotFound"
    status_code = 404


class InvalidTransitionError(DispatchError):
    """Requested incident status change is not reachable from the current state."""
    kind = "InvalidTransition"
    status_code = 409


class AmbulanceUnavailableError(DispatchError):
    kind = "AmbulanceUnavailable"
    status_code = 409


class IncidentNotAssignableError(DispatchError):
    kind = "IncidentNotAssignable"
    status_code = 409


class NoCandidateAvailableError(DispatchError):
    """Ranking produced zero eligible ambulances; the incident stays PENDING."""
    kind = "NoCandidateAvailable"
    status_code = 409


class AlreadyDispatchedError(DispatchError):
    kind = "AlreadyDispatched"
    status_code = 409


class ConflictError(DispatchError):
    """Lost a race for a shared resource. Safe to retry."""
    kind = "Conflict"
    status_code = 409


class UpstreamUnavailableError(DispatchError):
    """Routing oracle or classifier failed or timed out."""
    kind = "UpstreamUnavailable"
    status_code = 503


class RetryExhaustedError(DispatchError):
    kind = "RetryExhausted"
    status_code = 503

    def __init__(self, message: str = "", last_error: Exception = None):
        super().__init__(message)
        self.last_error = last_error
