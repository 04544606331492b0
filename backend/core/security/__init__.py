"""
Security utilities for authentication and webhook verification.
"""

from .tokens import TokenPayload, TokenService
from .webhook_signature import compute_webhook_signature, verify_webhook_signature

__all__ = [
    "TokenService",
    "TokenPayload",
    "compute_webhook_signature",
    "verify_webhook_signature",
]
