"""
Utility functions for the Twilio webhook routes.
"""

import logging
from typing import Optional
from urllib.parse import parse_qsl

from twilio.request_validator import RequestValidator

logger = logging.getLogger(__name__)


def parse_form_body(body: bytes) -> dict[str, str]:
    """
    Decode an application/x-www-form-urlencoded body.

    Twilio never repeats a field in its callbacks, so the last value wins.
    """
    return dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))


def verify_twilio_signature(
    url: str,
    params: dict[str, str],
    signature: Optional[str],
    auth_token: str,
) -> bool:
    """
    Verify the X-Twilio-Signature header of a webhook request.

    Args:
        url: Full URL Twilio posted to, as configured in the console
        params: Decoded form parameters
        signature: Value of X-Twilio-Signature
        auth_token: Auth token of the account that owns the number

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        logger.info("Twilio signature missing")
        return False
    if not auth_token:
        logger.error("TWILIO_AUTH_TOKEN not configured, cannot verify webhook")
        return False

    is_valid = RequestValidator(auth_token).validate(url, params, signature)
    logger.info(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
