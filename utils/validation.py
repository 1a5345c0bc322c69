"""
Input validation utilities for slot data and API inputs.
"""

import re
from datetime import datetime
from typing import Optional

from utils.exceptions import ValidationError


def sanitize_text(text: str, max_length: Optional[int] = None) -> str:
    """
    Sanitize free-text input such as slot notes.

    Args:
        text: Input text
        max_length: Optional maximum length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    # Remove control characters except newlines and tabs
    sanitized = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]', '', str(text))
    sanitized = sanitized.strip()

    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized


def validate_interval(start: datetime, end: datetime) -> None:
    """
    Raise ValidationError unless ``start < end``.
    """
    if start >= end:
        raise ValidationError(
            f"Invalid interval: start {start.isoformat()} must be before end {end.isoformat()}"
        )


def validate_custom_price(
    custom_price: Optional[float],
    service_price: Optional[float],
    privileged: bool,
) -> None:
    """
    Check a custom slot price.

    Admins may set any non-negative price. Practitioners may not go below
    the service's catalog price.
    """
    if custom_price is None:
        return
    if custom_price < 0:
        raise ValidationError("Custom price must be positive or zero")
    if not privileged and service_price is not None and custom_price < service_price:
        raise ValidationError(
            f"Custom price must be at least the service price ({service_price})"
        )
