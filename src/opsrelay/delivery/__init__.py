"""
Outbound delivery: rate limiting, retries and the chat transport.
"""

from .client import DeliveryClient, classify_error
from .rate_limiter import RateLimiter
from .transport import TelegramTransport, Transport, classify_telegram_error

__all__ = [
    "DeliveryClient",
    "RateLimiter",
    "TelegramTransport",
    "Transport",
    "classify_error",
    "classify_telegram_error",
]
