"""
Engine Exceptions
Error taxonomy shared by the ledger, scheduler, dispatcher and API layer
"""

from typing import Optional


class EngineError(Exception):
    """Base class for engine errors surfaced to callers"""

    status_code: int = 400

    def __init__(self, message: str, *, detail: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InvalidTransition(EngineError):
    """State change attempted from a terminal dose or a completed one-time alarm"""

    status_code = 409


class NotFound(EngineError):
    """Referenced item, dose, schedule, alarm or alert does not exist"""

    status_code = 404


class Unauthorized(EngineError):
    """Trigger called without a valid user token or automation secret"""

    status_code = 401


class DeliveryFailure(EngineError):
    """A channel sender could not deliver a notification"""

    status_code = 502

    def __init__(self, message: str, *, channel: Optional[str] = None, retryable: bool = True):
        super().__init__(message, detail={"channel": channel})
        self.channel = channel
        self.retryable = retryable
