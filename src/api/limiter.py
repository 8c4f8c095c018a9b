"""
Coarse per-IP request limiter (slowapi) layered in front of the login throttle.
"""

import os
from functools import wraps

from slowapi import Limiter

from src.catalog_app.utils.network import client_ip


def is_testing() -> bool:
    return os.getenv("TESTING", "0") == "1" or os.getenv("ENVIRONMENT") == "testing"


limiter = Limiter(key_func=client_ip)


def conditional_limiter(rate: str):
    """
    Apply rate limiting only in non-testing environments.

    Args:
        rate: Rate limit string like "10/minute"

    Returns:
        Decorator that applies rate limiting in production, passthrough in tests
    """

    def decorator(func):
        limited_func = limiter.limit(rate)(func)

        @wraps(func)
        def wrapper(*args, **kwargs):
            if is_testing():
                return func(*args, **kwargs)
            return limited_func(*args, **kwargs)

        return wrapper

    return decorator
