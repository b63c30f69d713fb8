# Ad platform connections: token lifecycle and multi-platform sync
from .models import Platform, PlatformConnection, TokenBundle
from .token_refresh import TokenRefreshOrchestrator, is_token_expired

__all__ = [
    "Platform",
    "PlatformConnection",
    "TokenBundle",
    "TokenRefreshOrchestrator",
    "is_token_expired",
]
