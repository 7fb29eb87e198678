"""Error taxonomy shared by every request path.

Each error carries the HTTP status the caller should see; the proxy renders
it in the caller's dialect, so nothing here knows about response shapes.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for errors that are reported back to the caller."""

    status_code: int = 500
    error_type: str = "api_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ProxyError):
    """Malformed or unsupported inbound request. Never retried."""

    status_code = 400
    error_type = "invalid_request_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        param: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.param = param
        self.code = code


class AuthError(ProxyError):
    """Credential missing, exchange failed, or the long-lived token is invalid.

    ``reauth_required`` separates "the GitHub token is dead, run the device
    flow again" from a transient failure of the token exchange.
    """

    status_code = 401
    error_type = "authentication_error"

    def __init__(self, reason: str, reauth_required: bool = False) -> None:
        super().__init__(reason)
        self.reason = reason
        self.reauth_required = reauth_required


class RateLimitError(ProxyError):
    """Admission rejected because the minimum interval has not elapsed."""

    status_code = 429
    error_type = "rate_limit_error"

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded, retry after {retry_after:.1f}s")
        self.retry_after = retry_after


class RequestDeniedError(ProxyError):
    """The operator denied the request, or approval timed out."""

    status_code = 403
    error_type = "permission_error"


class UpstreamError(ProxyError):
    """Non-2xx from the upstream API, or a failure mid-stream."""

    error_type = "api_error"

    def __init__(self, message: str, upstream_status: int | None = None) -> None:
        super().__init__(message, _caller_status(upstream_status))
        self.upstream_status = upstream_status
        if upstream_status == 429:
            self.error_type = "rate_limit_error"
        elif upstream_status is not None and 400 <= upstream_status < 500:
            self.error_type = "invalid_request_error"

    @property
    def retryable(self) -> bool:
        return self.upstream_status is not None and self.upstream_status >= 500


class TranslationError(ProxyError):
    """Internal inconsistency between dialects; a translator bug."""

    status_code = 500
    error_type = "api_error"


def _caller_status(upstream_status: int | None) -> int:
    if upstream_status is None or upstream_status >= 500:
        return 502
    if upstream_status in (401, 403):
        # The caller cannot fix our upstream credential
        return 502
    return upstream_status
