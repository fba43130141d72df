"""Input validation utilities."""

import re

from email_validator import EmailNotValidError, validate_email as email_validate


def validate_email(email: str) -> bool:
    """Validate email address format."""
    try:
        email_validate(email, check_deliverability=False)
        return True
    except EmailNotValidError:
        return False


def validate_phone(phone: str) -> bool:
    """Validate phone number format (basic validation)."""
    cleaned = re.sub(r'[^\d+]', '', phone)
    return bool(re.match(r'^(\+?\d{7,15})$', cleaned))


def mask_contact(contact: str) -> str:
    """Mask an email address or phone number for logging."""
    if "@" in contact:
        local, _, domain = contact.partition("@")
        return f"{local[:1]}***@{domain}"
    if len(contact) <= 4:
        return contact
    return contact[:2] + "*" * max(0, len(contact) - 4) + contact[-2:]
