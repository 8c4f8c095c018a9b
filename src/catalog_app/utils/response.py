"""
Response builder.

Handlers and dependencies record the cookies and headers they want on the
outgoing response; the HTTP middleware in src.api.main applies them once,
whatever response (success or error) is finally produced.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from fastapi import Request
from starlette.responses import Response

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


@dataclass
class CookieSpec:
    name: str
    value: str
    secure: bool
    samesite: str
    domain: Optional[str] = None
    path: str = "/"


@dataclass
class ResponseBuilder:
    cookies: List[CookieSpec] = field(default_factory=list)
    deleted_cookies: List[CookieSpec] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)

    def set_session_cookie(
        self,
        name: str,
        value: str,
        secure: bool,
        samesite: str,
        domain: Optional[str] = None,
    ) -> None:
        """Session cookie: HttpOnly, no Max-Age (cleared on browser close)."""
        # SameSite=None is only honoured by browsers on Secure cookies
        if samesite.lower() == "none":
            secure = True
        self.deleted_cookies = [c for c in self.deleted_cookies if c.name != name]
        self.cookies = [c for c in self.cookies if c.name != name]
        self.cookies.append(CookieSpec(name, value, secure, samesite, domain))

    def delete_cookie(
        self,
        name: str,
        secure: bool,
        samesite: str,
        domain: Optional[str] = None,
    ) -> None:
        if samesite.lower() == "none":
            secure = True
        self.cookies = [c for c in self.cookies if c.name != name]
        self.deleted_cookies.append(CookieSpec(name, "", secure, samesite, domain))

    def set_header(self, name: str, value: str) -> None:
        self.headers[name] = value

    def apply(self, response: Response) -> Response:
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        for name, value in self.headers.items():
            response.headers[name] = value
        for cookie in self.cookies:
            response.set_cookie(
                key=cookie.name,
                value=cookie.value,
                path=cookie.path,
                domain=cookie.domain or None,
                secure=cookie.secure,
                httponly=True,
                samesite=cookie.samesite.lower(),
            )
        for cookie in self.deleted_cookies:
            response.delete_cookie(
                key=cookie.name,
                path=cookie.path,
                domain=cookie.domain or None,
                secure=cookie.secure,
                httponly=True,
                samesite=cookie.samesite.lower(),
            )
        return response


def get_response_builder(request: Request) -> ResponseBuilder:
    """Builder bound to the current request (created on first use)."""
    builder = getattr(request.state, "response_builder", None)
    if builder is None:
        builder = ResponseBuilder()
        request.state.response_builder = builder
    return builder
