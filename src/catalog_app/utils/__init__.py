"""
Catalog Site Utilities Package

Request-level helpers shared by the HTTP layer and the security services.
"""

from .network import client_ip, ua_fingerprint
from .response import ResponseBuilder, get_response_builder
from .timeutils import as_utc, utcnow

__all__ = [
    "ResponseBuilder",
    "as_utc",
    "client_ip",
    "get_response_builder",
    "ua_fingerprint",
    "utcnow",
]
