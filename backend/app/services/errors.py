"""
Tagged error taxonomy shared by the store, the sync layer and the endpoints
"""
from typing import Optional
import re
import httpx


class InsightsError(Exception):
    kind = "error"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class ValidationFailed(InsightsError):
    kind = "validation"


class TransportError(InsightsError):
    kind = "transport"


class AuthError(InsightsError):
    kind = "auth"


class StoreError(InsightsError):
    kind = "store"


class NotFoundError(StoreError):
    kind = "not_found"


class ConflictError(StoreError):
    kind = "conflict"


class BackendUnavailable(InsightsError):
    kind = "backend_unavailable"


AUTH_PATTERN = re.compile(r"jwt|\b(?:un)?auth(?:entic\w*|oriz\w*)?\b", re.IGNORECASE)


def is_auth_failure(exc: BaseException) -> bool:
    if isinstance(exc, AuthError):
        return True
    return bool(AUTH_PATTERN.search(str(exc)))


def classify_error(exc: BaseException) -> InsightsError:
    """
    Map any exception raised by the supabase client or httpx onto the taxonomy
    """
    if isinstance(exc, InsightsError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code in (401, 403):
        return AuthError(str(exc), cause=exc)
    # Transport failures first: their text can name a host such as auth.example.co
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return TransportError(str(exc) or exc.__class__.__name__, cause=exc)
    if is_auth_failure(exc):
        return AuthError(str(exc), cause=exc)

    # postgrest APIError carries its text in .message
    message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    return StoreError(str(message), cause=exc)
