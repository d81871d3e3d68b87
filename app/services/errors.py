# app/services/errors.py
"""
Typed failures of the alert engine.
Routers map them to HTTP status codes; periodic tasks log and move on.
"""


class AlertEngineError(Exception):
    status_code = 500

    def __init__(self, message: str, alert_id: str = None):
        super().__init__(message)
        self.message = message
        self.alert_id = alert_id


class NotFound(AlertEngineError):
    """Referenced alert id is not known."""
    status_code = 404


class InvalidTransition(AlertEngineError):
    """Requested status change is not an edge of the status graph."""
    status_code = 409

    def __init__(self, message: str, alert_id: str = None, current=None, requested=None):
        super().__init__(message, alert_id)
        self.current = current
        self.requested = requested


class ValidationFailed(AlertEngineError):
    """Required input missing or malformed (short closing notes, empty target...)."""
    status_code = 422


class StoreUnavailable(AlertEngineError):
    """Alert Store call failed or timed out. Local state is untouched."""
    status_code = 503


class Conflict(AlertEngineError):
    """Concurrent edit detected; caller should retry with fresh state."""
    status_code = 409
