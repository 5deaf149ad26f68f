"""
Rate limiting for provider API calls.
"""
from aiolimiter import AsyncLimiter

from meeting_pipeline.config import Settings


class RateLimiters:
    """Per-provider rate limiters, one set per pipeline context."""

    def __init__(self, settings: Settings):
        """Initialize rate limiters from settings."""
        self.llm_limiter = AsyncLimiter(max_rate=settings.llm_rate_limit, time_period=60)

        # Jira Cloud enforces cost-based limits; a few requests per second stays well under them
        self.jira_limiter = AsyncLimiter(max_rate=settings.jira_rate_limit, time_period=1)

        self.transcription_limiter = AsyncLimiter(max_rate=settings.transcription_rate_limit, time_period=1)

    async def acquire_llm_limit(self):
        """Acquire rate limit slot for the LLM provider."""
        async with self.llm_limiter:
            pass

    async def acquire_jira_limit(self):
        """Acquire rate limit slot for the Jira API."""
        async with self.jira_limiter:
            pass

    async def acquire_transcription_limit(self):
        """Acquire rate limit slot for the transcription provider."""
        async with self.transcription_limiter:
            pass
