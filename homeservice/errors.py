"""Error kinds raised by the engine.

Services raise these; the HTTP layer maps each kind to a status code.
"""


class EngineError(Exception):
    kind = "engine_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidTransition(EngineError):
    """Current status does not allow the requested move. Re-fetch and retry."""

    kind = "invalid_transition"
    status_code = 409


class Unauthorized(EngineError):
    """Actor or role does not match the transition."""

    kind = "unauthorized"
    status_code = 403


class InvariantViolation(EngineError):
    """A caller handed the engine inconsistent data (e.g. escrow shares)."""

    kind = "invariant_violation"
    status_code = 500


class UpstreamUnavailable(EngineError):
    kind = "upstream_unavailable"
    status_code = 503


class NotFound(EngineError):
    kind = "not_found"
    status_code = 404


class RateLimited(EngineError):
    kind = "rate_limited"
    status_code = 429
