"""
Shared logging helpers for the Vault Reconciliation Engine

Card and customer data arrives from external batch files; nothing from those
payloads is written to a log without passing through these helpers first.
"""

import re
from typing import Any, Optional


def sanitize_for_logging(text: Any) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if text is None or text == '':
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    # Truncate to reasonable length
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def mask_card(last_four: Optional[str]) -> str:
    """Render a card reference showing only the last four digits

    >>> mask_card("4242")
    '****4242'
    """
    if not last_four:
        return '****'
    digits = re.sub(r'\D', '', str(last_four))[-4:]
    return f"****{digits}"


def mask_email(email: Optional[str]) -> str:
    """Keep the first character and the domain of an email address"""
    if not email or '@' not in email:
        return '***'
    local, domain = email.split('@', 1)
    return f"{local[:1]}***@{sanitize_for_logging(domain)}"
