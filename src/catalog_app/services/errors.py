"""
Security error taxonomy.

Every error carries an HTTP status, a stable machine-readable reason and a
human message. Nothing internal (tracebacks, SQL) is ever put in a payload;
src.api.main renders these through one exception handler.
"""

from typing import Any, Dict, Optional


class SecurityError(Exception):
    """Base class for errors mapped directly to a client response."""

    status_code = 400
    reason = "bad_request"
    message = "Solicitud inválida"

    def __init__(
        self,
        message: Optional[str] = None,
        reason: Optional[str] = None,
        **extra: Any,
    ):
        self.message = message or self.message
        self.reason = reason or self.reason
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def payload(self) -> Dict[str, Any]:
        body = {
            "success": False,
            "reason": self.reason,
            "message": self.message,
            "error": self.message,
        }
        body.update(self.extra)
        return body

    def headers(self) -> Dict[str, str]:
        return {}


class InvalidRequest(SecurityError):
    status_code = 400
    reason = "invalid_request"
    message = "Solicitud inválida"


class AuthenticationFailure(SecurityError):
    """Bad credentials. Recoverable by retry, subject to the throttle."""

    status_code = 401
    reason = "invalid_credentials"
    message = "Usuario o contraseña inválidos"


class NotAuthenticated(SecurityError):
    status_code = 401
    reason = "not_logged_in"
    message = "No autenticado"

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["authenticated"] = False
        return body


class SessionExpired(NotAuthenticated):
    """Terminal for the session: idle_timeout, absolute_timeout or fingerprint_mismatch."""

    reason = "session_expired"
    message = "Sesión expirada"


class PermissionDenied(SecurityError):
    status_code = 403
    reason = "forbidden"
    message = "No autorizado"


class RateLimited(SecurityError):
    status_code = 429
    reason = "rate_limited"
    message = "Demasiados intentos. Intenta más tarde."

    def __init__(self, retry_after: int, message: Optional[str] = None, **extra: Any):
        self.retry_after = max(1, int(retry_after))
        super().__init__(message, retryAfter=self.retry_after, **extra)

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class ChallengeRequired(SecurityError):
    status_code = 400
    reason = "recaptcha_required"
    message = "reCAPTCHA requerido"

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["recaptcha_required"] = True
        return body


class ChallengeFailed(ChallengeRequired):
    reason = "recaptcha_failed"
    message = "Fallo reCAPTCHA"


class CsrfRejected(SecurityError):
    status_code = 400
    reason = "csrf_invalid"
    message = "CSRF token inválido o ausente"

    def payload(self) -> Dict[str, Any]:
        body = super().payload()
        body["csrf_required"] = True
        return body


class StoreUnavailable(SecurityError):
    """Infrastructure fault in a persistent store or external dependency."""

    status_code = 503
    reason = "store_unavailable"
    message = "Servicio temporalmente no disponible"

    def __init__(self, domain: str, message: Optional[str] = None):
        self.domain = domain
        super().__init__(message)


class NotFound(SecurityError):
    status_code = 404
    reason = "not_found"
    message = "No encontrado"
