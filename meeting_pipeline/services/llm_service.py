"""
Client for an OpenAI-compatible chat completions endpoint.
"""
from typing import Dict

from meeting_pipeline.exceptions import InvalidProviderResponse
from meeting_pipeline.logging_config import get_logger
from meeting_pipeline.services.base import ProviderClient
from meeting_pipeline.utils import safe_dict_get

logger = get_logger(__name__)


class LLMService(ProviderClient):
    """Single-prompt text generation."""

    PROVIDER = "llm"
    SYSTEM_PROMPT = "You are an expert meeting analyst. You answer with valid JSON only."

    def __init__(self, api_key: str, api_url: str, model: str = "gpt-4o-mini", **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.api_url = api_url
        self.model = model

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self.api_key}"
        headers["Content-Type"] = "application/json"
        return headers

    async def invoke(self, prompt: str, max_tokens: int = 4000, temperature: float = 0.1) -> str:
        """
        Send one prompt and return the model's text.

        Args:
            prompt: User prompt
            max_tokens: Completion token limit
            temperature: Sampling temperature

        Returns:
            Text of the first choice

        Raises:
            ProviderError: Mapped HTTP failure
            InvalidProviderResponse: No text in the response
        """
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        response = await self._request("POST", self.api_url, "invoke", json=payload)
        data = self._json(response, "invoke")

        content = safe_dict_get(data, "choices", 0, "message", "content")
        if not isinstance(content, str) or not content.strip():
            raise InvalidProviderResponse("LLM response has no message content", provider=self.PROVIDER)

        logger.info(
            "llm_invoked",
            model=self.model,
            prompt_chars=len(prompt),
            finish_reason=safe_dict_get(data, "choices", 0, "finish_reason"),
        )
        return content
