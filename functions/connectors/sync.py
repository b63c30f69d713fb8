"""
Multi-platform sync.

Fetches from each requested platform through the token refresh orchestrator.
A failure on one platform never affects the others.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from gateway.errors import ApiClientError, DecryptionError, ReauthRequiredError
from connectors.models import Platform
from connectors.token_refresh import TokenRefreshOrchestrator

logger = logging.getLogger(__name__)

FetchFn = Callable[[Platform, str], Awaitable[Any]]


@dataclass
class PlatformSyncResult:
    platform: str
    success: bool
    data: Any = None
    error: Optional[str] = None
    needs_reauth: bool = False


async def _sync_one(
    orchestrator: TokenRefreshOrchestrator,
    user_id: str,
    platform: Platform,
    fetch: FetchFn,
) -> PlatformSyncResult:
    async def call(access_token: str):
        return await fetch(platform, access_token)

    try:
        data = await orchestrator.with_token_refresh(user_id, platform, call)
    except ReauthRequiredError as e:
        return PlatformSyncResult(platform.value, False, error=e.message, needs_reauth=True)
    except DecryptionError:
        logger.error(f"Failed to decrypt stored token for {platform.value}", extra={"user_id": user_id})
        return PlatformSyncResult(
            platform.value, False, error="Token decryption failed. Please reconnect your account."
        )
    except ApiClientError as e:
        logger.warning(
            f"Sync failed for {platform.value}: {e.message}",
            extra={"platform": platform.value, "user_id": user_id, "error_code": e.code},
        )
        return PlatformSyncResult(platform.value, False, error=e.message)
    except Exception as e:
        logger.error(f"Unexpected sync failure for {platform.value}", exc_info=True, extra={"user_id": user_id})
        return PlatformSyncResult(platform.value, False, error=str(e) or type(e).__name__)

    return PlatformSyncResult(platform.value, True, data=data)


async def sync_platforms(
    orchestrator: TokenRefreshOrchestrator,
    user_id: str,
    platforms: Iterable[str],
    fetch: FetchFn,
) -> list[PlatformSyncResult]:
    """
    Run fetch for each platform concurrently, isolating failures.

    Args:
        orchestrator: Supplies valid tokens and handles 401 refresh
        user_id: Connection owner
        platforms: Platform names; unknown names get an error result
        fetch: async (platform, access_token) -> data

    Returns:
        One result per requested platform, in request order
    """
    results: list[Optional[PlatformSyncResult]] = []
    pending = []

    for name in platforms:
        platform = Platform.parse(name)
        if platform is None:
            results.append(PlatformSyncResult(str(name), False, error=f"Unknown platform: {name}"))
            continue
        results.append(None)
        pending.append((len(results) - 1, _sync_one(orchestrator, user_id, platform, fetch)))

    outcomes = await asyncio.gather(*(coro for _, coro in pending))
    for (index, _), outcome in zip(pending, outcomes):
        results[index] = outcome

    succeeded = sum(1 for r in results if r.success)
    logger.info(
        f"Synced {succeeded}/{len(results)} platforms",
        extra={"user_id": user_id, "succeeded": succeeded, "requested": len(results)},
    )
    return results
