"""
Per-session anti-forgery tokens.

Tokens are 32 hex chars from the OS CSPRNG and are compared in constant time.
The token is rotated on the login transition so a value issued to an
anonymous session cannot be replayed after authentication.
"""

import secrets
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from src.catalog_app.services.session_service import SessionData

CSRF_HEADER = "X-CSRF-Token"
TOKEN_BYTES = 16


class CsrfTokenManager:
    def issue(self) -> str:
        return secrets.token_hex(TOKEN_BYTES)

    def validate(self, session_token: Optional[str], supplied_token: Optional[str]) -> bool:
        if not session_token or not supplied_token:
            return False
        return secrets.compare_digest(
            session_token.encode("utf-8"), supplied_token.encode("utf-8")
        )

    def ensure(self, session: "SessionData") -> str:
        """Return the session's token, issuing one if it has none yet."""
        if not session.csrf_token:
            session.csrf_token = self.issue()
        return session.csrf_token

    def rotate(self, session: "SessionData") -> str:
        previous = session.csrf_token
        token = self.issue()
        while token == previous:
            token = self.issue()
        session.csrf_token = token
        return token


csrf_manager = CsrfTokenManager()
