from __future__ import annotations
"""
Concierge — User-facing error messages
======================================
Maps AI provider failures and HTTP statuses onto the short apology strings
shown in the chat transcript. Raw provider errors are logged, never shown.
"""

import logging

import anthropic

logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = (
    "I apologize, but I'm currently experiencing high demand and cannot process "
    "your request right now. Please try again in a few minutes, or contact "
    "support if this issue persists."
)
CONFIGURATION_MESSAGE = (
    "I apologize, but there's a configuration issue with my AI service. "
    "Please contact support for assistance."
)
GENERIC_AI_MESSAGE = (
    "I apologize, but I'm experiencing technical difficulties right now. "
    "Please try again in a moment."
)


class AIServiceError(Exception):
    """Raised by the generator when every model in the chain failed.

    ``user_message`` is safe to put in front of the user.
    """

    def __init__(self, user_message: str, status_code: int | None = None):
        super().__init__(user_message)
        self.user_message = user_message
        self.status_code = status_code


def message_for_status(status_code: int | None) -> str:
    if status_code == 429:
        return RATE_LIMIT_MESSAGE
    if status_code in (401, 403):
        return CONFIGURATION_MESSAGE
    return GENERIC_AI_MESSAGE


def message_for_exception(exc: BaseException) -> str:
    """Pick the apology string for an exception raised by the Anthropic SDK."""
    if isinstance(exc, AIServiceError):
        return exc.user_message
    if isinstance(exc, anthropic.RateLimitError):
        return RATE_LIMIT_MESSAGE
    if isinstance(exc, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
        return CONFIGURATION_MESSAGE
    if isinstance(exc, anthropic.APIStatusError):
        return message_for_status(exc.status_code)
    return GENERIC_AI_MESSAGE


def to_service_error(exc: BaseException) -> AIServiceError:
    status_code = getattr(exc, "status_code", None)
    logger.error(f"[ai] Provider error (status={status_code}): {exc}")
    return AIServiceError(message_for_exception(exc), status_code=status_code)
