"""
Retrying Dispatcher

Calls a channel-specific ``send`` callable, classifies failures as
retryable or fatal, and re-attempts with exponential backoff.

    attempt 0 -> fail (retryable) -> sleep initial_delay * multiplier**0
    attempt 1 -> fail (retryable) -> sleep initial_delay * multiplier**1
    attempt 2 -> fail (retryable) -> sleep initial_delay * multiplier**2
    attempt 3 -> fail             -> give up (max_retries=3, 4 attempts)

Fatal errors stop immediately.  The dispatcher records nothing; the caller
owns the ReminderLog row.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import RetrySettings
from .models import DeliveryOutcome, SendReceipt

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DeliveryError(Exception):
    """
    A provider call failed.

    Attributes:
        code: Provider or socket error code (e.g. ``ECONNRESET``,
            ``RATE_LIMIT_EXCEEDED``).
        status_code: HTTP or SMTP status, when there was one.
    """

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


# Transient signatures, matched against the error message and code.
RETRYABLE_SIGNATURES: tuple[str, ...] = (
    "ECONNREFUSED",
    "ETIMEDOUT",
    "ENOTFOUND",
    "ECONNRESET",
    "EPIPE",
    "RATE_LIMIT_EXCEEDED",
    "SERVICE_UNAVAILABLE",
    "INTERNAL_SERVER_ERROR",
    "429",
    "500",
    "502",
    "503",
    "504",
)

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

# Python-level equivalents of the socket signatures above.
_TRANSIENT_EXCEPTIONS = (ConnectionError, TimeoutError, socket.gaierror)


def is_retryable(error: BaseException) -> bool:
    """True when ``error`` looks transient (network, rate limit, 5xx)."""
    if isinstance(error, _TRANSIENT_EXCEPTIONS):
        return True

    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int) and status_code in RETRYABLE_STATUS_CODES:
        return True

    message = str(error)
    code = getattr(error, "code", None)
    code = str(code) if code is not None else ""
    return any(sig in message or sig in code for sig in RETRYABLE_SIGNATURES)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 60.0
    multiplier: float = 2.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_retries=int(settings.max_retries),
            initial_delay=float(settings.initial_delay_seconds),
            multiplier=float(settings.multiplier),
        )

    def delay_for(self, retry_index: int) -> float:
        """Seconds to wait after failed attempt ``retry_index`` (0-based)."""
        return self.initial_delay * (self.multiplier ** retry_index)


def backoff_delay(retry_index: int, policy: Optional[RetryPolicy] = None) -> float:
    return (policy or RetryPolicy()).delay_for(retry_index)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class RetryingDispatcher:
    """
    Bounded-retry delivery of a single message.

    ``sleep`` only blocks the calling thread, so a dispatch running on one
    worker never delays another invoice.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, sleep: Callable[[float], None] = time.sleep):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def dispatch(
        self,
        send: Callable[[], Optional[SendReceipt]],
        skip_retry: bool = False,
        label: str = "",
    ) -> DeliveryOutcome:
        """Run ``send`` until it succeeds, fails fatally, or retries run out."""
        delays: list[float] = []
        attempt = 0

        while True:
            try:
                receipt = send() or SendReceipt()
            except Exception as exc:
                retryable = is_retryable(exc)
                if skip_retry or not retryable or attempt >= self.policy.max_retries:
                    logger.warning(
                        "Delivery %s failed after %d attempt(s) (retryable=%s): %s",
                        label or "", attempt + 1, retryable, exc,
                    )
                    return DeliveryOutcome(
                        success=False,
                        attempts=attempt + 1,
                        error=str(exc) or exc.__class__.__name__,
                        retryable=retryable,
                        delays=delays,
                    )

                delay = self.policy.delay_for(attempt)
                logger.info(
                    "Delivery %s attempt %d failed (%s); retrying in %.1fs",
                    label or "", attempt + 1, exc, delay,
                )
                delays.append(delay)
                self._sleep(delay)
                attempt += 1
                continue

            return DeliveryOutcome(
                success=True,
                attempts=attempt + 1,
                message_id=receipt.message_id,
                cost=receipt.cost,
                delays=delays,
            )
