"""Utility modules for the HSSE escalation service."""

from .logging import get_logger, setup_logging
from .validation import mask_contact, validate_email, validate_phone

__all__ = [
    "get_logger",
    "setup_logging",
    "mask_contact",
    "validate_email",
    "validate_phone",
]
