"""
Token bucket admission control.

Buckets are keyed by client identity and route class and live in an
injected `BucketStore`. Each bucket holds up to `capacity` tokens and gains
`refill_tokens` at the end of every full `refill_period_seconds` window since
its last refill, so the state at any instant is a pure function of the clock.
"""

import math
import time
import logging

from collections import OrderedDict
from dataclasses import dataclass
from itertools import islice
from threading import Lock
from typing import Callable, Dict, Optional, Protocol, Union

from models.helpers import RouteClass
from services.errors import RateLimitExceeded
from utils.settings import Settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BucketPolicy:
    """Capacity and refill schedule shared by every bucket of one route class."""

    name: str
    capacity: int
    refill_tokens: int
    refill_period_seconds: float

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("capacity must be at least 1")
        if self.refill_tokens < 1:
            raise ValueError("refill_tokens must be at least 1")
        if self.refill_period_seconds <= 0:
            raise ValueError("refill_period_seconds must be positive")


@dataclass(frozen=True)
class Allowed:
    remaining: int


@dataclass(frozen=True)
class Denied:
    wait_seconds: int
    remaining: int


AdmissionResult = Union[Allowed, Denied]


@dataclass(frozen=True)
class BucketInfo:
    available_tokens: int
    wait_seconds: int


class TokenBucket:
    """
    Token Bucket with interval refill.

    Tokens come back in whole windows rather than trickling in, which is what
    makes "5 attempts per 15 minutes" mean exactly that. Every method except
    the constructor expects the caller to hold `lock`.
    """

    def __init__(self, policy: BucketPolicy, now: float):
        """
        Initialize a full token bucket.

        Args:
            policy: Capacity and refill schedule
            now: Clock reading the first refill window starts from
        """
        self.policy = policy
        self.tokens = policy.capacity
        self.last_refill = now
        self.last_access = now
        self.lock = Lock()
        # Set once the bucket has been evicted from its store
        self.retired = False

    def refill(self, now: float) -> None:
        """
        Add the tokens of every window that has fully elapsed since the last refill.

        Calling this any number of times with the same `now` leaves the same state.
        A clock reading before `last_refill` adds nothing.

        Args:
            now: Current clock reading
        """
        period = self.policy.refill_period_seconds
        elapsed = now - self.last_refill
        if elapsed < period:
            return

        windows = int(elapsed // period)
        self.tokens = min(self.policy.capacity, self.tokens + windows * self.policy.refill_tokens)
        self.last_refill += windows * period

    def try_take(self, cost: int, now: float) -> bool:
        """
        Deduct `cost` tokens if that many are available.

        Args:
            cost: Number of tokens to consume
            now: Current clock reading

        Returns:
            True if tokens were consumed, False if the bucket was left unchanged
        """
        self.refill(now)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False

    def wait_seconds(self, cost: int, now: float) -> int:
        """
        Seconds until `cost` tokens will be available, rounded up.

        Args:
            cost: Number of tokens wanted
            now: Current clock reading

        Returns:
            0 when the tokens are available now
        """
        self.refill(now)
        if self.tokens >= cost:
            return 0

        windows_needed = math.ceil((cost - self.tokens) / self.policy.refill_tokens)
        ready_at = self.last_refill + windows_needed * self.policy.refill_period_seconds
        return max(0, math.ceil(ready_at - now))

    def is_full(self, now: float) -> bool:
        self.refill(now)
        return self.tokens >= self.policy.capacity


class BucketStore(Protocol):
    """Where buckets live. Swappable without touching the bucket algorithm."""

    def get_or_create(self, key: str, factory: Callable[[], TokenBucket]) -> TokenBucket:
        """Return the bucket for `key`, creating it with `factory` exactly once."""
        ...

    def get(self, key: str) -> Optional[TokenBucket]: ...

    def discard(self, key: str) -> bool: ...

    def clear(self) -> int: ...

    def sweep(self, now: float, idle_seconds: float, max_scan: Optional[int] = None) -> int:
        """Evict buckets idle for `idle_seconds` that would be full anyway.

        Looks at no more than `max_scan` buckets per call. Returns the count evicted.
        """
        ...

    def __len__(self) -> int: ...


class InMemoryBucketStore:
    """
    Process local bucket registry.

    One lock guards the mapping, so check-then-create is atomic per key. The
    registry is capped at `max_buckets`; past that the least recently used
    bucket is dropped.
    """

    def __init__(self, max_buckets: int = 100_000):
        if max_buckets < 1:
            raise ValueError("max_buckets must be at least 1")
        self.max_buckets = max_buckets
        self._buckets: "OrderedDict[str, TokenBucket]" = OrderedDict()
        self._lock = Lock()

    def get_or_create(self, key: str, factory: Callable[[], TokenBucket]) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is not None:
                self._buckets.move_to_end(key)
                return bucket

            bucket = factory()
            self._buckets[key] = bucket
            logger.debug(f"Created new token bucket for key: {key}")

            while len(self._buckets) > self.max_buckets:
                evicted_key, evicted = self._buckets.popitem(last=False)
                self._retire(evicted)
                logger.info(f"Bucket registry full, evicted least recently used key: {evicted_key}")

            return bucket

    def get(self, key: str) -> Optional[TokenBucket]:
        with self._lock:
            return self._buckets.get(key)

    def discard(self, key: str) -> bool:
        with self._lock:
            bucket = self._buckets.pop(key, None)
            if bucket is None:
                return False
            self._retire(bucket)
            return True

    def clear(self) -> int:
        with self._lock:
            buckets = list(self._buckets.values())
            self._buckets.clear()
            for bucket in buckets:
                self._retire(bucket)
            return len(buckets)

    def sweep(self, now: float, idle_seconds: float, max_scan: Optional[int] = None) -> int:
        removed = 0
        with self._lock:
            # Least recently used first, so the scan can stop at the first recent bucket
            candidates = list(islice(self._buckets.items(), max_scan))
            for key, bucket in candidates:
                if now - bucket.last_access < idle_seconds:
                    break
                # A bucket someone is using right now is not idle
                if not bucket.lock.acquire(blocking=False):
                    continue
                try:
                    if bucket.is_full(now):
                        bucket.retired = True
                        del self._buckets[key]
                        removed += 1
                finally:
                    bucket.lock.release()
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    @staticmethod
    def _retire(bucket: TokenBucket) -> None:
        with bucket.lock:
            bucket.retired = True


class AdmissionController:
    """
    Decides whether a request identified by `key` may proceed.

    Updates to one bucket are serialized by that bucket's lock. A caller that
    finds a bucket retired by a concurrent eviction simply resolves the key
    again and gets the fresh one, so no token is ever spent on a dead bucket.
    """

    def __init__(
        self,
        store: BucketStore,
        default_policy: BucketPolicy,
        clock: Callable[[], float] = time.monotonic,
        idle_seconds: float = 3600,
        sweep_batch_size: int = 1000,
    ):
        if sweep_batch_size < 1:
            raise ValueError("sweep_batch_size must be at least 1")
        self.store = store
        self.default_policy = default_policy
        self.idle_seconds = idle_seconds
        self.sweep_batch_size = sweep_batch_size
        self._clock = clock
        self._last_sweep = clock()
        self._sweep_lock = Lock()

        logger.info(
            f"Admission controller initialized: default policy {default_policy.capacity} tokens, "
            f"refill {default_policy.refill_tokens} every {default_policy.refill_period_seconds}s"
        )

    def _with_bucket(self, key: str, policy: Optional[BucketPolicy], operation: Callable[[TokenBucket, float], object]):
        policy = policy or self.default_policy
        while True:
            created_at = self._clock()
            bucket = self.store.get_or_create(key, lambda: TokenBucket(policy, created_at))
            with bucket.lock:
                if bucket.retired:
                    continue
                now = self._clock()
                bucket.last_access = now
                return operation(bucket, now)

    @staticmethod
    def _check_cost(bucket: TokenBucket, cost: int) -> None:
        if cost < 1 or cost > bucket.policy.capacity:
            raise ValueError(f"cost must be between 1 and {bucket.policy.capacity}")

    def check(self, key: str, policy: Optional[BucketPolicy] = None, cost: int = 1) -> AdmissionResult:
        """
        Try to consume `cost` tokens from the bucket for `key`.

        The bucket is created full on first use with `policy` (or the default
        policy). Later calls use the policy the bucket was created with.

        Args:
            key: Client identity plus route class
            policy: Policy for a bucket created by this call
            cost: Number of tokens to consume (default: 1)

        Returns:
            Allowed with the tokens left, or Denied with the wait until `cost` tokens are back
        """
        self._maybe_sweep()

        def operation(bucket: TokenBucket, now: float) -> AdmissionResult:
            self._check_cost(bucket, cost)
            if bucket.try_take(cost, now):
                return Allowed(remaining=bucket.tokens)
            return Denied(wait_seconds=bucket.wait_seconds(cost, now), remaining=bucket.tokens)

        result = self._with_bucket(key, policy, operation)
        if isinstance(result, Denied):
            logger.debug(f"No tokens available for key: {key}, wait {result.wait_seconds}s")
        return result

    def try_consume(self, key: str, policy: Optional[BucketPolicy] = None, cost: int = 1) -> bool:
        return isinstance(self.check(key, policy, cost), Allowed)

    def consume(self, key: str, policy: Optional[BucketPolicy] = None, cost: int = 1) -> int:
        """
        Like `check`, but raises when no tokens are available.

        Returns:
            Tokens left in the bucket

        Raises:
            RateLimitExceeded: Carries the seconds until consumption is possible
        """
        result = self.check(key, policy, cost)
        if isinstance(result, Denied):
            logger.warning(f"Rate limit exceeded for key: {key}, wait {result.wait_seconds}s")
            raise RateLimitExceeded(retry_after_seconds=result.wait_seconds)
        return result.remaining

    def get_info(self, key: str, policy: Optional[BucketPolicy] = None) -> BucketInfo:
        """
        Available tokens and seconds until one more token can be consumed.

        Read only: an unknown key reports a full bucket of `policy` (or the
        default policy) without creating one.
        """
        while True:
            bucket = self.store.get(key)
            if bucket is None:
                capacity = (policy or self.default_policy).capacity
                return BucketInfo(available_tokens=capacity, wait_seconds=0)

            with bucket.lock:
                if bucket.retired:
                    continue
                # wait_seconds refills first, so tokens are read after it
                wait = bucket.wait_seconds(1, self._clock())
                return BucketInfo(available_tokens=bucket.tokens, wait_seconds=wait)

    def remove(self, key: str) -> bool:
        removed = self.store.discard(key)
        if removed:
            logger.info(f"Bucket removed: {key}")
        return removed

    def clear(self) -> int:
        count = self.store.clear()
        logger.warning(f"All token buckets cleared. Total removed: {count}")
        return count

    def sweep(self) -> int:
        """Evict up to `sweep_batch_size` idle buckets. Safe because an evicted bucket would have been full.

        When a whole batch is evicted the next request sweeps again instead of
        waiting another idle interval.
        """
        now = self._clock()
        removed = self.store.sweep(now, self.idle_seconds, max_scan=self.sweep_batch_size)
        if removed < self.sweep_batch_size:
            self._last_sweep = now
        if removed:
            logger.info(f"Cleaned up {removed} inactive token buckets")
        return removed

    def _maybe_sweep(self) -> None:
        if self._clock() - self._last_sweep < self.idle_seconds:
            return
        # One sweeper at a time; everyone else carries on
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            if self._clock() - self._last_sweep >= self.idle_seconds:
                self.sweep()
        finally:
            self._sweep_lock.release()


def policies_from_settings(settings: Settings) -> Dict[RouteClass, BucketPolicy]:
    """Build the default and login route policies from configuration."""
    return {
        RouteClass.DEFAULT: BucketPolicy(
            name=RouteClass.DEFAULT.value,
            capacity=settings.rate_limit_default_capacity,
            refill_tokens=settings.rate_limit_default_refill_tokens,
            refill_period_seconds=settings.rate_limit_default_refill_seconds,
        ),
        RouteClass.LOGIN: BucketPolicy(
            name=RouteClass.LOGIN.value,
            capacity=settings.rate_limit_login_capacity,
            refill_tokens=settings.rate_limit_login_refill_tokens,
            refill_period_seconds=settings.rate_limit_login_refill_seconds,
        ),
    }
