"""
Fixed-window rate limiting for inbound callers.

Counters live in DynamoDB when RATE_LIMIT_TABLE is configured, so all
Lambda instances share one budget per identifier. Any DynamoDB error
degrades to the process-local store for that call.

A fixed window admits up to 2x limit across a window boundary (limit at the
end of one window, limit at the start of the next). This is accepted.
"""

import asyncio
import hashlib
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from gateway.aws_clients import get_dynamodb
from gateway.constants import RATE_LIMIT_SWEEP_INTERVAL, UNKNOWN_CLIENT
from gateway.errors import RateLimitExceededError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    limit: int
    window_ms: int


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check. reset_at is epoch milliseconds."""

    allowed: bool
    remaining: int
    reset_at: int
    retry_after: Optional[int] = None  # seconds, set only when denied


# Preset configurations for different endpoint classes
RATE_LIMIT_PRESETS = {
    "api": RateLimitConfig(limit=100, window_ms=60 * 1000),
    "auth": RateLimitConfig(limit=5, window_ms=15 * 60 * 1000),
    "oauth": RateLimitConfig(limit=10, window_ms=60 * 1000),
    "reports": RateLimitConfig(limit=10, window_ms=60 * 60 * 1000),
    "pdf": RateLimitConfig(limit=20, window_ms=60 * 60 * 1000),
    "strict": RateLimitConfig(limit=3, window_ms=60 * 60 * 1000),
    # Bulk platform sync is expensive: every call fans out to all connectors
    "data_sync": RateLimitConfig(limit=5, window_ms=60 * 1000),
    "auth_signup": RateLimitConfig(limit=3, window_ms=60 * 1000),
}


def _denied(reset_at: int, now_ms: int) -> RateLimitResult:
    return RateLimitResult(
        allowed=False,
        remaining=0,
        reset_at=reset_at,
        retry_after=max(1, math.ceil((reset_at - now_ms) / 1000)),
    )


class InMemoryRateLimitStore:
    """Process-local counters. Also the fallback when DynamoDB is unavailable."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, dict] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def hit(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        now_ms = int(self._clock() * 1000)
        if limit <= 0:
            return _denied(now_ms + window_ms, now_ms)
        with self._lock:
            entry = self._entries.get(key)

            if entry is None or now_ms > entry["reset_at"]:
                reset_at = now_ms + window_ms
                self._entries[key] = {"count": 1, "reset_at": reset_at}
                return RateLimitResult(allowed=True, remaining=max(0, limit - 1), reset_at=reset_at)

            if entry["count"] >= limit:
                return _denied(entry["reset_at"], now_ms)

            entry["count"] += 1
            return RateLimitResult(allowed=True, remaining=limit - entry["count"], reset_at=entry["reset_at"])

    def sweep(self) -> int:
        """Remove expired windows. Returns the number removed."""
        now_ms = int(self._clock() * 1000)
        with self._lock:
            snapshot = list(self._entries.items())

        expired = [key for key, entry in snapshot if now_ms > entry["reset_at"]]

        removed = 0
        with self._lock:
            for key in expired:
                # The key may have started a new window since the snapshot
                entry = self._entries.get(key)
                if entry is not None and now_ms > entry["reset_at"]:
                    del self._entries[key]
                    removed += 1
        return removed


class DynamoDBRateLimitStore:
    """
    Shared counters in DynamoDB.

    Schema:
        pk: "ratelimit#{identifier}"
        count: N (atomic ADD within the window)
        reset_at: N (epoch ms, end of the window)
        ttl: N (epoch seconds, DynamoDB TTL cleanup)
    """

    def __init__(self, table_name: str, clock: Callable[[], float] = time.time):
        self.table_name = table_name
        self._clock = clock

    def _table(self):
        return get_dynamodb().Table(self.table_name)

    def _increment(self, table, pk: str, now_ms: int) -> Optional[dict]:
        """ADD 1 to a live window. Returns None when no live window exists."""
        try:
            response = table.update_item(
                Key={"pk": pk},
                UpdateExpression="ADD #count :one",
                ConditionExpression="attribute_exists(pk) AND reset_at >= :now",
                ExpressionAttributeNames={"#count": "count"},
                ExpressionAttributeValues={":one": 1, ":now": now_ms},
                ReturnValues="ALL_NEW",
            )
            return response["Attributes"]
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return None
            raise

    def _start_window(self, table, pk: str, now_ms: int, window_ms: int) -> Optional[int]:
        """Open a new window with count=1. Returns None if another caller won the race."""
        reset_at = now_ms + window_ms
        try:
            table.update_item(
                Key={"pk": pk},
                UpdateExpression="SET #count = :one, reset_at = :reset_at, #ttl = :ttl",
                ConditionExpression="attribute_not_exists(pk) OR reset_at < :now",
                ExpressionAttributeNames={"#count": "count", "#ttl": "ttl"},
                ExpressionAttributeValues={
                    ":one": 1,
                    ":reset_at": reset_at,
                    ":now": now_ms,
                    ":ttl": math.ceil(reset_at / 1000),
                },
            )
            return reset_at
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return None
            raise

    def hit(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        """
        Count one request against key.

        Raises:
            ClientError, BotoCoreError: DynamoDB unavailable (caller falls back)
        """
        now_ms = int(self._clock() * 1000)
        if limit <= 0:
            return _denied(now_ms + window_ms, now_ms)

        table = self._table()
        pk = f"ratelimit#{key}"

        item = self._increment(table, pk, now_ms)
        if item is None:
            reset_at = self._start_window(table, pk, now_ms, window_ms)
            if reset_at is not None:
                return RateLimitResult(allowed=True, remaining=max(0, limit - 1), reset_at=reset_at)
            # Lost the race to open the window; count against the winner's
            item = self._increment(table, pk, now_ms)
            if item is None:
                raise RuntimeError(f"Rate limit window for {key} could not be established")

        count = int(item["count"])
        reset_at = int(item["reset_at"])
        if count > limit:
            return _denied(reset_at, now_ms)
        return RateLimitResult(allowed=True, remaining=limit - count, reset_at=reset_at)


class RateLimiter:
    """
    Rate limit checks with distributed-first, local-fallback storage.

    Sweeping only matters for the local store; DynamoDB items expire via
    the table's TTL attribute. check() sweeps the local store inline once
    sweep_interval seconds have passed, so expired entries are dropped even
    when no background sweeper outlives the event loop (one loop per
    Lambda invocation).
    """

    def __init__(
        self,
        distributed: Optional[DynamoDBRateLimitStore] = None,
        local: Optional[InMemoryRateLimitStore] = None,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = RATE_LIMIT_SWEEP_INTERVAL,
    ):
        self.distributed = distributed
        self.local = local if local is not None else InMemoryRateLimitStore()
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._last_sweep = clock()
        self._sweeper: Optional[asyncio.Task] = None

    def _maybe_sweep(self) -> None:
        now = self._clock()
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        removed = self.local.sweep()
        if removed:
            logger.debug(f"Swept {removed} expired rate limit entries")

    async def check(self, identifier: str, limit: int, window_ms: int) -> RateLimitResult:
        """Count one request for identifier against limit per window_ms."""
        self._maybe_sweep()
        if self.distributed is not None:
            try:
                return await asyncio.to_thread(self.distributed.hit, identifier, limit, window_ms)
            except (ClientError, BotoCoreError, RuntimeError) as e:
                logger.warning(
                    f"Distributed rate limit store failed, falling back to memory: {e}",
                    extra={"rate_limit_key": identifier, "error_type": type(e).__name__},
                )
        return self.local.hit(identifier, limit, window_ms)

    async def check_preset(self, identifier: str, preset: str = "api") -> RateLimitResult:
        config = RATE_LIMIT_PRESETS[preset]
        return await self.check(identifier, config.limit, config.window_ms)

    async def enforce(self, headers: Optional[dict], preset: str = "api") -> dict:
        """
        Rate limit an inbound request by its headers.

        Returns:
            X-RateLimit-* headers to attach to the response

        Raises:
            RateLimitExceededError: the caller is over its budget
        """
        config = RATE_LIMIT_PRESETS[preset]
        identifier = get_rate_limit_identifier(headers, prefix=preset)
        result = await self.check(identifier, config.limit, config.window_ms)
        if not result.allowed:
            raise RateLimitExceededError.from_result(result, config.limit)
        return rate_limit_headers(result, config.limit)

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self._last_sweep = self._clock()
            removed = self.local.sweep()
            if removed:
                logger.debug(f"Swept {removed} expired rate limit entries")

    def start_sweeper(self, interval_seconds: float = RATE_LIMIT_SWEEP_INTERVAL) -> asyncio.Task:
        """Start periodic sweeping of the local store on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop(interval_seconds))
        return self._sweeper

    async def aclose(self) -> None:
        """Stop the sweeper, if running."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None


def get_rate_limit_identifier(headers: Optional[dict], prefix: str = "api") -> str:
    """
    Derive the rate limit key for an inbound request.

    Bearer credentials are keyed by a hash so tokens never land in the
    counter store. Without a credential the client IP is used.
    """
    normalized = {k.lower(): v for k, v in (headers or {}).items() if v}

    auth_header = normalized.get("authorization", "")
    if auth_header.startswith("Bearer ") and auth_header[7:].strip():
        token_hash = hashlib.sha256(auth_header[7:].strip().encode()).hexdigest()[:16]
        return f"{prefix}:user:{token_hash}"

    forwarded = normalized.get("x-forwarded-for", "")
    ip = forwarded.split(",")[0].strip() if forwarded else ""
    if not ip:
        ip = normalized.get("x-real-ip", "").strip()
    if not ip:
        ip = UNKNOWN_CLIENT
        logger.warning(
            "Rate limiting request without client identity under shared bucket",
            extra={"rate_limit_prefix": prefix},
        )

    return f"{prefix}:ip:{ip}"


def rate_limit_headers(result: RateLimitResult, limit: int) -> dict:
    """Build X-RateLimit-* response headers for a check result."""
    headers = {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(math.ceil(result.reset_at / 1000)),
    }
    if not result.allowed and result.retry_after:
        headers["Retry-After"] = str(result.retry_after)
    return headers
