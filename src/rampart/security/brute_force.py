"""
Brute-force protection with progressive account lockout.

Login attempts are tracked per identifier (usually an email) and, in
parallel, per source IP. Each key moves between two derived states:

    Open --(max_attempts failures in window)--> Locked --(now > lockout_until)--> Open

Lockout is anchored at the most recent failure and lasts
``lockout_minutes * PROGRESSIVE_MULTIPLIERS[i]`` where ``i`` counts the
failures beyond the threshold, capped at the last multiplier. A successful
login does not clear history; callers clear explicitly after success.

``check_login_attempt`` fails open.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from ..shared.clock import Clock, get_clock
from ..shared.config import BruteForceSettings, get_brute_force_settings
from ..shared.logging_config import get_logger
from ..shared.metrics_collector import get_metrics_collector
from ..shared.store import InMemoryStore, KeyValueStore
from .severity import SecuritySeverity, escalate

KEY_PREFIX = "login_attempts:"
PROGRESSIVE_MULTIPLIERS = (1, 2, 4, 8, 16)
MANUAL_LOCK_MARKER = "manual_lock"


@dataclass(frozen=True)
class LoginAttempt:
    """A single recorded login attempt."""
    id: str
    identifier: str
    ip_address: str
    user_agent: str
    success: bool
    timestamp: datetime
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BruteForceConfig:
    """Lockout thresholds."""
    max_attempts: int = 5
    window_minutes: float = 15
    lockout_minutes: float = 30
    progressive_lockout: bool = True
    track_by_ip: bool = True
    track_by_email: bool = True
    retention_hours: float = 24

    @classmethod
    def from_settings(cls, settings: Optional[BruteForceSettings] = None) -> 'BruteForceConfig':
        s = settings or get_brute_force_settings()
        return cls(
            max_attempts=s.max_attempts,
            window_minutes=s.window_minutes,
            lockout_minutes=s.lockout_minutes,
            progressive_lockout=s.progressive_lockout,
            track_by_ip=s.track_by_ip,
            track_by_email=s.track_by_email,
            retention_hours=s.retention_hours,
        )


@dataclass
class BruteForceResult:
    """Verdict for a login attempt."""
    allowed: bool
    remaining_attempts: int
    severity: SecuritySeverity = SecuritySeverity.LOW
    lockout_until: Optional[datetime] = None
    retry_after: Optional[float] = None
    reason: Optional[str] = None
    failed_attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed': self.allowed,
            'remaining_attempts': self.remaining_attempts,
            'severity': self.severity.value,
            'lockout_until': self.lockout_until.isoformat() if self.lockout_until else None,
            'retry_after': self.retry_after,
            'reason': self.reason,
            'failed_attempts': self.failed_attempts,
        }


@dataclass
class AccountLockStatus:
    """Lock state of an identifier."""
    is_locked: bool
    attempt_count: int
    lockout_until: Optional[datetime] = None
    lockout_reason: Optional[str] = None


def lockout_duration(fail_count: int, config: BruteForceConfig) -> timedelta:
    """Lockout length for ``fail_count`` failures in the window."""
    base = timedelta(minutes=config.lockout_minutes)
    if not config.progressive_lockout:
        return base
    index = min(max(0, fail_count - config.max_attempts), len(PROGRESSIVE_MULTIPLIERS) - 1)
    return base * PROGRESSIVE_MULTIPLIERS[index]


def recent_failures(attempts: Sequence[LoginAttempt], now: datetime, config: BruteForceConfig) -> List[LoginAttempt]:
    window_start = now - timedelta(minutes=config.window_minutes)
    return [a for a in attempts if not a.success and a.timestamp >= window_start]


def evaluate_attempts(
    key: str,
    attempts: Sequence[LoginAttempt],
    now: datetime,
    config: BruteForceConfig
) -> BruteForceResult:
    """Derive the lockout verdict for one key from its attempt history."""
    failures = recent_failures(attempts, now, config)
    fail_count = len(failures)
    remaining = max(0, config.max_attempts - fail_count)

    if fail_count >= config.max_attempts:
        last_failed = max(failures, key=lambda a: a.timestamp)
        lockout_until = last_failed.timestamp + lockout_duration(fail_count, config)
        if now < lockout_until:
            reason = "Too many failed attempts"
            if last_failed.metadata.get(MANUAL_LOCK_MARKER):
                reason = last_failed.metadata.get('reason') or "Account locked manually"
            return BruteForceResult(
                allowed=False,
                remaining_attempts=0,
                severity=(
                    SecuritySeverity.CRITICAL if fail_count >= config.max_attempts * 2
                    else SecuritySeverity.HIGH
                ),
                lockout_until=lockout_until,
                retry_after=(lockout_until - now).total_seconds(),
                reason=f"{reason} for {key}",
                failed_attempts=fail_count
            )

    return BruteForceResult(
        allowed=True,
        remaining_attempts=remaining,
        severity=SecuritySeverity.MEDIUM if remaining <= 1 else SecuritySeverity.LOW,
        failed_attempts=fail_count
    )


def combine_results(results: Sequence[BruteForceResult], config: BruteForceConfig) -> BruteForceResult:
    """Most restrictive verdict across the identifier and IP views."""
    if not results:
        return BruteForceResult(allowed=True, remaining_attempts=config.max_attempts)

    locked = [r for r in results if not r.allowed]
    if locked:
        # The later lockout wins when both views are locked.
        result = max(locked, key=lambda r: r.lockout_until)
        severity = result.severity
        for r in locked:
            severity = escalate(severity, r.severity)
        combined = BruteForceResult(
            allowed=False,
            remaining_attempts=0,
            severity=severity,
            lockout_until=result.lockout_until,
            retry_after=result.retry_after,
            reason=result.reason,
            failed_attempts=max(r.failed_attempts for r in results)
        )
    else:
        severity = SecuritySeverity.LOW
        for r in results:
            severity = escalate(severity, r.severity)
        combined = BruteForceResult(
            allowed=True,
            remaining_attempts=min(r.remaining_attempts for r in results),
            severity=severity,
            failed_attempts=max(r.failed_attempts for r in results)
        )

    if any(r.remaining_attempts <= 2 for r in results):
        combined.severity = escalate(combined.severity, SecuritySeverity.MEDIUM)
    return combined


class BruteForceGuard:
    """Tracks login attempts and derives lockouts per identifier and per IP."""

    def __init__(
        self,
        config: Optional[BruteForceConfig] = None,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or BruteForceConfig.from_settings()
        self.clock = clock or get_clock()
        self.store = store or InMemoryStore(self.clock)
        self.logger = get_logger(__name__, 'brute_force')
        self.metrics = get_metrics_collector()

        self.stats = {
            'checks': 0,
            'lockouts': 0,
            'attempts_recorded': 0,
            'check_errors': 0,
        }

    @staticmethod
    def _key(identifier: str) -> str:
        return f"{KEY_PREFIX}{identifier}"

    def _retention(self) -> timedelta:
        return timedelta(hours=self.config.retention_hours)

    async def _load(self, identifier: str) -> Tuple[LoginAttempt, ...]:
        return await self.store.get(self._key(identifier)) or ()

    async def _append(self, identifier: str, attempts: Sequence[LoginAttempt]):
        key = self._key(identifier)
        async with self.store.lock(key):
            now = self.clock.now()
            cutoff = now - self._retention()
            existing = await self.store.get(key) or ()
            updated = tuple(a for a in existing if a.timestamp >= cutoff) + tuple(attempts)
            await self.store.set(key, updated, ttl=self._retention().total_seconds())

    async def check_login_attempt(self, identifier: str, ip_address: Optional[str] = None) -> BruteForceResult:
        """
        Decide whether a login attempt for ``identifier`` may proceed.

        Args:
            identifier: Account identifier (usually an email)
            ip_address: Source address; checked independently when IP tracking is on

        Returns:
            The most restrictive verdict of the identifier and IP views
        """
        self.stats['checks'] += 1
        try:
            now = self.clock.now()
            results = []
            if self.config.track_by_email:
                results.append(evaluate_attempts(identifier, await self._load(identifier), now, self.config))
            if self.config.track_by_ip and ip_address and ip_address != identifier:
                results.append(evaluate_attempts(ip_address, await self._load(ip_address), now, self.config))
            result = combine_results(results, self.config)
        except Exception as e:
            self.stats['check_errors'] += 1
            self.logger.error(
                f"Brute force check failed, admitting attempt: {e}",
                operation="check_login_attempt",
                identifier=identifier,
                ip_address=ip_address,
                error=str(e)
            )
            return BruteForceResult(allowed=True, remaining_attempts=self.config.max_attempts)

        if not result.allowed:
            self.metrics.get_counter('brute_force_lockouts_total').increment()
            self.logger.warning(
                "Login attempt blocked",
                operation="check_login_attempt",
                identifier=identifier,
                ip_address=ip_address,
                severity=result.severity.value,
                lockout_until=result.lockout_until.isoformat() if result.lockout_until else None,
                reason=result.reason
            )
        else:
            self.logger.info(
                "Login attempt allowed",
                operation="check_login_attempt",
                identifier=identifier,
                remaining_attempts=result.remaining_attempts,
                severity=result.severity.value
            )
        return result

    async def record_login_attempt(
        self,
        identifier: str,
        success: bool,
        ip_address: str = "unknown",
        user_agent: str = "unknown",
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> LoginAttempt:
        """Append an attempt under the identifier and, when different, the IP."""
        attempt = LoginAttempt(
            id=str(uuid4()),
            identifier=identifier,
            ip_address=ip_address or "unknown",
            user_agent=user_agent or "unknown",
            success=success,
            timestamp=self.clock.now(),
            user_id=user_id,
            metadata=dict(metadata or {})
        )

        await self._append(identifier, [attempt])
        if self.config.track_by_ip and attempt.ip_address not in (identifier, "unknown"):
            await self._append(attempt.ip_address, [attempt])

        self.stats['attempts_recorded'] += 1
        log = self.logger.info if success else self.logger.warning
        log(
            f"Login attempt {'succeeded' if success else 'failed'}",
            operation="record_login_attempt",
            identifier=identifier,
            ip_address=attempt.ip_address,
            user_id=user_id,
            success=success
        )
        return attempt

    async def clear_failed_attempts(self, identifier: str) -> int:
        """Drop failed attempts for ``identifier``; successes stay for audit."""
        key = self._key(identifier)
        async with self.store.lock(key):
            attempts = await self.store.get(key) or ()
            kept = tuple(a for a in attempts if a.success)
            if kept:
                await self.store.set(key, kept, ttl=self._retention().total_seconds())
            else:
                await self.store.delete(key)
        cleared = len(attempts) - len(kept)
        self.logger.info(
            "Failed attempts cleared",
            operation="clear_failed_attempts",
            identifier=identifier,
            cleared=cleared
        )
        return cleared

    async def lock_account(self, identifier: str, reason: str, ip_address: str = "system") -> BruteForceResult:
        """Force the identifier into the locked state."""
        now = self.clock.now()
        synthetic = [
            LoginAttempt(
                id=str(uuid4()),
                identifier=identifier,
                ip_address=ip_address,
                user_agent="manual_lock",
                success=False,
                timestamp=now,
                metadata={MANUAL_LOCK_MARKER: True, 'reason': reason}
            )
            for _ in range(self.config.max_attempts)
        ]
        await self._append(identifier, synthetic)
        self.stats['lockouts'] += 1

        result = evaluate_attempts(identifier, await self._load(identifier), now, self.config)
        self.logger.warning(
            "Account locked manually",
            operation="lock_account",
            identifier=identifier,
            reason=reason,
            lockout_until=result.lockout_until.isoformat() if result.lockout_until else None
        )
        return result

    async def unlock_account(self, identifier: str, reason: str) -> bool:
        """Lift a lock by deleting every attempt recorded for ``identifier``."""
        key = self._key(identifier)
        async with self.store.lock(key):
            existed = await self.store.delete(key)
        self.logger.info(
            "Account unlocked",
            operation="unlock_account",
            identifier=identifier,
            reason=reason,
            had_history=existed
        )
        return existed

    async def get_account_lock_status(self, identifier: str) -> AccountLockStatus:
        now = self.clock.now()
        attempts = await self._load(identifier)
        result = evaluate_attempts(identifier, attempts, now, self.config)
        return AccountLockStatus(
            is_locked=not result.allowed,
            attempt_count=result.failed_attempts,
            lockout_until=result.lockout_until,
            lockout_reason=result.reason
        )

    async def get_attempt_history(self, identifier: str) -> List[LoginAttempt]:
        """Attempts for ``identifier`` in append order."""
        return list(await self._load(identifier))

    async def cleanup_expired(self) -> int:
        """Prune attempts past the retention horizon, one key at a time."""
        cutoff = self.clock.now() - self._retention()
        pruned = 0
        for key in await self.store.keys(KEY_PREFIX):
            async with self.store.lock(key):
                attempts = await self.store.get(key)
                if attempts is None:
                    continue
                kept = tuple(a for a in attempts if a.timestamp >= cutoff)
                pruned += len(attempts) - len(kept)
                if kept:
                    await self.store.set(key, kept, ttl=self._retention().total_seconds())
                else:
                    await self.store.delete(key)
        if pruned:
            self.logger.info(
                f"Pruned {pruned} expired login attempts",
                operation="cleanup_expired",
                pruned=pruned
            )
        return pruned

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
