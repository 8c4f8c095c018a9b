"""
Client identity helpers: proxy-aware IP resolution and the coarse
User-Agent fingerprint bound to sessions.
"""

import hashlib
import ipaddress
from typing import Optional

from fastapi import Request

# Checked in order; the first valid address wins
IP_HEADERS = ("cf-connecting-ip", "x-forwarded-for", "x-real-ip")
UNKNOWN_IP = "0.0.0.0"
FINGERPRINT_LENGTH = 32


def _valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def client_ip(request: Request) -> str:
    """Resolve the client IP, honouring CDN/proxy headers (first hop only)."""
    for header in IP_HEADERS:
        raw = request.headers.get(header)
        if raw:
            candidate = raw.split(",")[0].strip()
            if _valid_ip(candidate):
                return candidate

    if request.client and request.client.host and _valid_ip(request.client.host):
        return request.client.host
    return UNKNOWN_IP


def ua_fingerprint(user_agent: Optional[str]) -> Optional[str]:
    """Truncated SHA-256 of the User-Agent, or None when the header is empty."""
    if not user_agent:
        return None
    return hashlib.sha256(user_agent.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]
