"""
Rate limiting configuration for API calls.
"""
from aiolimiter import AsyncLimiter

from meetbot.config import settings


class RateLimiters:
    """Centralized rate limiters for different APIs."""

    def __init__(self, graph_per_minute: int = 100, recall_per_minute: int = 60):
        """Initialize rate limiters for different services."""
        # Microsoft Graph calendar reads
        self.graph_limiter = AsyncLimiter(max_rate=graph_per_minute, time_period=60)

        # Recall.ai bot creation and reads share one account-level quota
        self.recall_limiter = AsyncLimiter(max_rate=recall_per_minute, time_period=60)

    async def acquire_graph_limit(self):
        """Acquire rate limit slot for Microsoft Graph API."""
        async with self.graph_limiter:
            pass

    async def acquire_recall_limit(self):
        """Acquire rate limit slot for Recall.ai API."""
        async with self.recall_limiter:
            pass


# Global rate limiters instance
rate_limiters = RateLimiters(
    graph_per_minute=settings.graph_api_rate_limit,
    recall_per_minute=settings.recall_api_rate_limit,
)
