import asyncio
import hmac
import ipaddress
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from fastapi import Request

from bridge.app.core.config import Settings
from bridge.app.core.logging import get_log_context, get_logger
from bridge.app.exceptions import (
    AuthenticationError,
    OriginNotAllowedError,
    RateLimitError,
)
from bridge.app.middleware.rate_limit import (
    AUTHENTICATION,
    CategoryLimit,
    RateLimiter,
)

logger = get_logger(__name__)

API_KEY_HEADER = "X-API-Key"

# Reject absurdly long credentials before comparing them
MAX_API_KEY_LENGTH = 512


class AuthOutcome(str, Enum):
    """Distinct result of a credential check, kept for auditing."""
    SUCCESS = "success"
    INVALID_CREDENTIAL = "invalid_credential"
    MISSING_CREDENTIAL = "missing_credential"
    BANNED = "banned"
    RATE_LIMITED = "rate_limited"

    @property
    def allowed(self) -> bool:
        return self is AuthOutcome.SUCCESS


@dataclass
class AttemptRecord:
    """Failed authentication attempts for one source."""
    source: str
    failed_count: int = 0
    last_attempt_at: float = 0.0
    ban_until: Optional[float] = None

    def is_banned(self, now: float) -> bool:
        return self.ban_until is not None and now < self.ban_until


class AttemptTracker:
    """Per-source failed authentication counter with temporary bans.

    Records are kept in LRU order and bounded by ``max_entries``. Eviction
    skips sources under an active ban unless every record is banned.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        self._clock = clock
        self._max_entries = max_entries
        self._records: OrderedDict[str, AttemptRecord] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def now(self) -> float:
        return self._clock()

    def _enforce_lru_limit(self, now: float) -> None:
        if len(self._records) < self._max_entries:
            return
        # Remove oldest 20% of unbanned entries
        remove_count = max(1, int(self._max_entries * 0.2))
        evictable = [
            source for source, record in self._records.items() if not record.is_banned(now)
        ][:remove_count]
        if not evictable:
            evictable = [next(iter(self._records))]
        for source in evictable:
            del self._records[source]

    async def get(self, source: str) -> Optional[AttemptRecord]:
        async with self._lock:
            return self._records.get(source)

    async def is_banned(self, source: str) -> bool:
        return await self.ban_remaining(source) is not None

    async def ban_remaining(self, source: str) -> Optional[float]:
        """Seconds left on an active ban, or None when not banned."""
        async with self._lock:
            record = self._records.get(source)
            now = self._clock()
            if record is None or not record.is_banned(now):
                return None
            return record.ban_until - now

    async def record_success(self, source: str) -> None:
        async with self._lock:
            record = self._records.get(source)
            if record is not None:
                record.failed_count = 0
                record.last_attempt_at = self._clock()
                self._records.move_to_end(source)

    async def record_failure(
        self,
        source: str,
        max_attempts: int,
        ban_seconds: float,
    ) -> tuple[AttemptRecord, bool]:
        """Count a failure and start a ban once ``max_attempts`` is reached.

        ``max_attempts`` of 0 disables banning. The count is only reset by a
        success, so after a ban expires the next failure bans again.

        Returns:
            The updated record and whether this failure started a ban
        """
        async with self._lock:
            now = self._clock()
            record = self._records.get(source)
            if record is None:
                self._enforce_lru_limit(now)
                record = self._records[source] = AttemptRecord(source=source)
            else:
                self._records.move_to_end(source)
            record.failed_count += 1
            record.last_attempt_at = now
            banned_now = max_attempts > 0 and record.failed_count >= max_attempts
            if banned_now:
                record.ban_until = now + ban_seconds
            return record, banned_now

    async def prune(self, idle_seconds: float) -> int:
        """Forget unbanned sources with no attempt for ``idle_seconds``.

        A pruned source starts counting failures from zero again.
        """
        async with self._lock:
            now = self._clock()
            idle = [
                source
                for source, record in self._records.items()
                if not record.is_banned(now) and now - record.last_attempt_at > idle_seconds
            ]
            for source in idle:
                del self._records[source]
        if idle:
            logger.debug(f"Pruned {len(idle)} idle authentication records")
        return len(idle)

    async def clear(self, source: Optional[str] = None) -> None:
        """Forget one source, or every source when none is given."""
        async with self._lock:
            if source is None:
                self._records.clear()
            else:
                self._records.pop(source, None)


@dataclass(frozen=True)
class AuthResult:
    """Outcome of one credential check."""
    outcome: AuthOutcome
    retry_after: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.outcome.allowed


class CredentialValidator:
    """Validates a presented API key for a source.

    Order matters: an active ban is checked first and consumes no token, then
    the authentication bucket, and only then is the key compared.
    """

    def __init__(
        self,
        settings: Settings,
        rate_limiter: RateLimiter,
        attempts: AttemptTracker,
    ):
        self._rate_limiter = rate_limiter
        self._attempts = attempts
        self.configure(settings)

    def configure(self, settings: Settings) -> None:
        """Apply (re)loaded settings."""
        self._api_key = settings.api_key
        self.required = settings.api_key_enabled
        self._rate_limiting = settings.rate_limiting_enabled
        self._limit = CategoryLimit(
            capacity=settings.rate_limit_auth_capacity,
            refill_per_minute=settings.rate_limit_auth_refill_per_minute,
        ).scaled(settings.rate_limit_multiplier)
        self._max_attempts = settings.max_auth_attempts
        self._ban_seconds = settings.temp_ban_minutes * 60

    @property
    def attempts(self) -> AttemptTracker:
        return self._attempts

    async def check(self, credential: Optional[str], source: str) -> AuthResult:
        """Run the full credential check and return its outcome."""
        ban_remaining = await self._attempts.ban_remaining(source)
        if ban_remaining is not None:
            result = AuthResult(AuthOutcome.BANNED, retry_after=max(1, int(ban_remaining)))
        else:
            result = await self._check_unbanned(credential, source)
        self._log_outcome(result.outcome, source)
        return result

    async def _check_unbanned(self, credential: Optional[str], source: str) -> AuthResult:
        if self._rate_limiting:
            limited = await self._rate_limiter.try_consume(f"{AUTHENTICATION}:{source}", self._limit)
            if not limited.allowed:
                return AuthResult(AuthOutcome.RATE_LIMITED, retry_after=limited.retry_after)

        if not credential:
            outcome = AuthOutcome.MISSING_CREDENTIAL
        elif len(credential) <= MAX_API_KEY_LENGTH and hmac.compare_digest(
            credential.encode("utf-8"), self._api_key.encode("utf-8")
        ):
            await self._attempts.record_success(source)
            return AuthResult(AuthOutcome.SUCCESS)
        else:
            outcome = AuthOutcome.INVALID_CREDENTIAL

        record, banned_now = await self._attempts.record_failure(
            source, self._max_attempts, self._ban_seconds
        )
        if banned_now:
            logger.warning(
                f"Temporarily banned {source} after {record.failed_count} failed authentication attempts",
                extra=get_log_context(source=source, category="ban"),
            )
        return AuthResult(outcome)

    async def validate(self, credential: Optional[str], source: str) -> bool:
        return (await self.check(credential, source)).allowed

    @staticmethod
    def raise_for_result(result: AuthResult) -> None:
        """Raise the exception matching a failed check."""
        outcome = result.outcome
        if outcome is AuthOutcome.SUCCESS:
            return
        if outcome is AuthOutcome.BANNED:
            raise RateLimitError(
                AUTHENTICATION,
                retry_after=result.retry_after,
                detail="Too many failed authentication attempts, temporarily banned",
            )
        if outcome is AuthOutcome.RATE_LIMITED:
            raise RateLimitError(AUTHENTICATION, retry_after=result.retry_after)
        if outcome is AuthOutcome.MISSING_CREDENTIAL:
            raise AuthenticationError("Missing API key")
        raise AuthenticationError("Invalid API key")

    @staticmethod
    def _log_outcome(outcome: AuthOutcome, source: str) -> None:
        context = get_log_context(source=source, category="authentication", outcome=outcome.value)
        if outcome is AuthOutcome.SUCCESS:
            logger.debug(f"Successful API key authentication from {source}", extra=context)
        elif outcome is AuthOutcome.BANNED:
            logger.warning(f"Rejected authentication from banned source {source}", extra=context)
        elif outcome is AuthOutcome.RATE_LIMITED:
            logger.warning(f"Rate limit exceeded for authentication attempts from {source}", extra=context)
        else:
            logger.warning(f"Failed API key authentication attempt from {source}", extra=context)


class NetworkPolicy:
    """Restricts which network addresses may connect at all."""

    def __init__(self, localhost_only: bool = False, allowed_networks: Optional[list[str]] = None):
        self.localhost_only = localhost_only
        self._networks = []
        for entry in allowed_networks or []:
            try:
                self._networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                logger.error(f"Ignoring invalid network in allowed_networks: {entry!r}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "NetworkPolicy":
        return cls(settings.localhost_only, settings.allowed_networks)

    def is_allowed(self, source: str) -> bool:
        if not self.localhost_only and not self._networks:
            return True
        try:
            address = ipaddress.ip_address(source)
        except ValueError:
            return False
        if self.localhost_only and not address.is_loopback:
            return False
        if self._networks:
            return any(address in network for network in self._networks)
        return True

    def enforce(self, source: str) -> None:
        if self.is_allowed(source):
            return
        logger.warning(
            f"Rejected connection from {source}: origin not allowed",
            extra=get_log_context(source=source, category="origin"),
        )
        if self.localhost_only:
            raise OriginNotAllowedError(source, "Localhost only connections are enforced")
        raise OriginNotAllowedError(source)


def extract_api_key(request: Request) -> Optional[str]:
    """Read the API key from ``X-API-Key``, falling back to a Bearer token."""
    api_key = request.headers.get(API_KEY_HEADER)
    if api_key is not None:
        return api_key.strip()
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:].strip()
    return None


def get_client_source(request: Request, trust_proxy_headers: bool = False) -> str:
    """Return the caller's network address used as the rate limit/ban key."""
    if trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"
