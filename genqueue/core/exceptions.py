"""Custom exceptions for the generation queue"""

from typing import Any, List, Optional


class GenQueueError(Exception):
    """Base exception for all genqueue errors"""

    pass


class ConfigurationError(GenQueueError):
    """Raised when configuration values are invalid"""

    pass


class ValidationError(GenQueueError):
    """Raised when a submitted job payload is invalid"""

    pass


class StoreError(GenQueueError):
    """Raised when the key-value datastore fails"""

    pass


class ConcurrencyConflict(GenQueueError):
    """Raised when an optimistic version check fails"""

    pass


class JobLostError(ConcurrencyConflict):
    """Raised when a job was reclaimed or removed while being executed"""

    pass


class QueueFullError(GenQueueError):
    """Raised when a submission would exceed the queue limits"""

    def __init__(self, message: str, limit: int):
        super().__init__(message)
        self.limit = limit


class BackendError(GenQueueError):
    """
    Base class for failures while talking to a backend.

    ``marks_offline`` tells the dispatcher whether the backend should be
    taken out of rotation until the next successful health probe.
    """

    marks_offline = False


class NetworkError(BackendError):
    """Raised on connection failures and timeouts"""

    marks_offline = True


class ProtocolError(BackendError):
    """Raised when a backend returns a non-success status or malformed payload"""

    OFFLINE_STATUS_CODES = (401, 403, 404)

    def __init__(
        self,
        prefix: str,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        body: Any = None,
    ):
        self.prefix = prefix
        self.status_code = status_code
        self.reason = reason
        self.body = body
        super().__init__(self._format_message())

    @property
    def marks_offline(self) -> bool:
        return self.status_code in self.OFFLINE_STATUS_CODES

    def _format_message(self) -> str:
        message = self.prefix
        if self.status_code is not None:
            message += f": {self.status_code} {self.reason or ''}".rstrip()

        if isinstance(self.body, dict):
            error = self.body.get("error")
            errors = self.body.get("errors")
            detail = self.body.get("detail")
            if error:
                message += f": {error}"
                if errors:
                    message += f" - {_join_errors(errors)}"
            elif detail:
                message += f": {_join_errors(detail)}"
        elif self.body:
            message += f": {self.body}"
        return message


class EmptyResultError(BackendError):
    """Raised when a backend reports success but returns no images"""

    pass


def _join_errors(errors: Any) -> str:
    if isinstance(errors, list):
        parts: List[str] = []
        for item in errors:
            if isinstance(item, dict) and "msg" in item:
                parts.append(str(item["msg"]))
            else:
                parts.append(str(item))
        return ", ".join(parts)
    return str(errors)
