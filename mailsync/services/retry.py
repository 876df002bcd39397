"""
Error classification and retry scheduling.

A failed run is classified as permission, rate limit, network,
configuration or unknown. The classification decides whether the run is
re-invoked after a fixed delay, whether the account's scheduled syncs are
pushed back, or whether the account ends in ``error``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from mailsync.core.config import SyncSettings, settings as default_settings
from mailsync.core.credential_vault import CredentialVaultError
from mailsync.providers.email.base import (
    ConfigurationError,
    NetworkError,
    PermissionDeniedError,
    RateLimitError,
    SyncContext,
)
from mailsync.workers.scheduler import SYNC_JOB, JobScheduler

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    PERMISSION = "permission"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class RetryAction(str, Enum):
    RETRY = "retry"
    BACKOFF = "backoff"
    FAIL = "fail"


PERMISSION_MESSAGE = "Permission denied. Please reconnect your email account to grant proper access."
RATE_LIMIT_MESSAGE = "Rate limit reached. Will retry automatically."
NETWORK_MESSAGE = "Network error. Will retry automatically."

PERMISSION_MARKERS = ("forbidden", "unauthorized", "access denied", "erroraccessdenied", "invalid_grant")
RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "throttl")
NETWORK_MARKERS = (
    "timeout",
    "timed out",
    "connection refused",
    "econnrefused",
    "enotfound",
    "name or service not known",
    "temporary failure in name resolution",
    "network",
)

NETWORK_TYPES = (
    NetworkError,
    httpx.TimeoutException,
    httpx.TransportError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)


@dataclass
class ClassifiedError:
    """A failure reduced to what the user and the retry policy need."""
    kind: ErrorKind
    message: str
    detail: str
    retry_after: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMIT, ErrorKind.NETWORK, ErrorKind.UNKNOWN)


@dataclass
class RetryDecision:
    action: RetryAction
    next_attempt: Optional[int] = None
    delay_seconds: int = 0


def _status_of(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None and isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    if status is None:
        resp = getattr(error, "resp", None)
        status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Classify a failure, checking permission, then rate limit, then network.

    Typed sync errors are trusted first; anything else is judged on its
    HTTP status and message text.
    """
    detail = str(error) or error.__class__.__name__

    if isinstance(error, ConfigurationError):
        return ClassifiedError(
            ErrorKind.CONFIGURATION,
            f"Account configuration is incomplete: {detail}",
            detail,
        )
    if isinstance(error, (PermissionDeniedError, CredentialVaultError)):
        return ClassifiedError(ErrorKind.PERMISSION, PERMISSION_MESSAGE, detail)
    if isinstance(error, RateLimitError):
        return ClassifiedError(ErrorKind.RATE_LIMIT, RATE_LIMIT_MESSAGE, detail, error.retry_after)
    if isinstance(error, NETWORK_TYPES):
        return ClassifiedError(ErrorKind.NETWORK, NETWORK_MESSAGE, detail)

    status = _status_of(error)
    text = detail.lower()
    if status in (401, 403) or any(marker in text for marker in PERMISSION_MARKERS):
        return ClassifiedError(ErrorKind.PERMISSION, PERMISSION_MESSAGE, detail)
    if status == 429 or any(marker in text for marker in RATE_LIMIT_MARKERS):
        return ClassifiedError(ErrorKind.RATE_LIMIT, RATE_LIMIT_MESSAGE, detail)
    if any(marker in text for marker in NETWORK_MARKERS):
        return ClassifiedError(ErrorKind.NETWORK, NETWORK_MESSAGE, detail)
    return ClassifiedError(ErrorKind.UNKNOWN, f"Sync failed: {detail}", detail)


class RetryPolicy:
    """Fixed-schedule retry policy."""

    def __init__(self, settings: Optional[SyncSettings] = None):
        self.settings = settings or default_settings

    def max_attempts(self, kind: ErrorKind) -> int:
        if kind == ErrorKind.UNKNOWN:
            return self.settings.unknown_error_max_attempts
        if kind in (ErrorKind.RATE_LIMIT, ErrorKind.NETWORK):
            return self.settings.max_attempts
        return 1

    def delay_before(self, next_attempt: int) -> int:
        """Delay before ``next_attempt`` (2 waits the first delay, 3 the second, ...)."""
        delays = self.settings.retry_delays_seconds
        return delays[min(next_attempt - 2, len(delays) - 1)]

    def decide(
        self,
        classified: ClassifiedError,
        attempt: int,
        backs_off_on_rate_limit: bool = False
    ) -> RetryDecision:
        if not classified.retryable:
            return RetryDecision(RetryAction.FAIL)
        if classified.kind == ErrorKind.RATE_LIMIT and backs_off_on_rate_limit:
            return RetryDecision(RetryAction.BACKOFF)
        if attempt >= self.max_attempts(classified.kind):
            return RetryDecision(RetryAction.FAIL)

        next_attempt = attempt + 1
        delay = self.delay_before(next_attempt)
        if classified.retry_after and classified.retry_after > delay:
            delay = classified.retry_after
        return RetryDecision(RetryAction.RETRY, next_attempt=next_attempt, delay_seconds=delay)


class RetryScheduler:
    """Applies retry decisions to the account and re-dispatches runs."""

    def __init__(
        self,
        accounts,
        scheduler: JobScheduler,
        settings: Optional[SyncSettings] = None,
        policy: Optional[RetryPolicy] = None
    ):
        self.accounts = accounts
        self.scheduler = scheduler
        self.settings = settings or default_settings
        self.policy = policy or RetryPolicy(self.settings)

    async def handle_failure(
        self,
        account: Dict[str, Any],
        context: SyncContext,
        error: BaseException,
        backs_off_on_rate_limit: bool = False
    ) -> RetryDecision:
        classified = classify_error(error)
        decision = self.policy.decide(classified, context.attempt, backs_off_on_rate_limit)
        now = datetime.now(timezone.utc)
        account_id = context.account_id

        logger.warning(
            f"Sync attempt {context.attempt} for account {account_id} failed "
            f"({classified.kind.value}): {classified.detail} -> {decision.action.value}"
        )

        if decision.action == RetryAction.RETRY:
            retries = self.policy.max_attempts(classified.kind) - 1
            still_owned = await self.accounts.mark_retrying(
                account_id,
                context.lease,
                decision.next_attempt,
                f"{classified.message} (Retry {decision.next_attempt - 1}/{retries})",
                now,
            )
            if not still_owned:
                logger.info(f"Account {account_id} no longer owned by this run, not retrying")
                return RetryDecision(RetryAction.FAIL)

            payload = {**context.to_payload(), "attempt": decision.next_attempt}
            try:
                await self.scheduler.schedule(SYNC_JOB, payload, delay_seconds=decision.delay_seconds)
            except Exception as e:
                logger.error(f"Failed to schedule retry for account {account_id}: {e}")
                await self.accounts.fail(
                    account_id, context.lease, f"{classified.message} (retry could not be scheduled)", now
                )
                return RetryDecision(RetryAction.FAIL)
            return decision

        if decision.action == RetryAction.BACKOFF:
            previous = account.get("rate_limit_backoff_minutes")
            minutes = min(
                previous * 2 if previous else self.settings.rate_limit_backoff_minutes,
                self.settings.rate_limit_backoff_max_minutes,
            )
            until = now + timedelta(minutes=minutes)
            await self.accounts.back_off(
                account_id,
                context.lease,
                f"Rate limit reached. Next sync after {until.strftime('%H:%M')} UTC.",
                until,
                minutes,
                now,
            )
            return decision

        await self.accounts.fail(
            account_id,
            context.lease,
            classified.message,
            now,
            needs_reconnection=classified.kind == ErrorKind.PERMISSION,
        )
        return decision
