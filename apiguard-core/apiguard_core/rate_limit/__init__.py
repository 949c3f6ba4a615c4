"""
Rate Limiting Module
====================
Sliding window admission control per IP, per endpoint and per API key.
"""

from .models import LimitCheck, exceeds_limit
from .sliding_window import SlidingWindowLimiter

__all__ = [
    "LimitCheck",
    "exceeds_limit",
    "SlidingWindowLimiter",
]
