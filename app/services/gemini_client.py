"""
Google Gemini REST client used by the AI tools.

Any failure (missing key, timeout, non-2xx, empty answer) surfaces as
GeminiError so the tool route can fall back to the local analyzers.
"""
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class GeminiError(Exception):
    pass


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate(self, prompt: str, max_output_tokens: int = 1024, temperature: float = 0.7) -> str:
        if not self.configured:
            raise GeminiError("GEMINI_API_KEY is not set")

        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_output_tokens,
            },
        }
        try:
            r = await self._client.post(
                f"/models/{self.model}:generateContent",
                params={"key": self.api_key},
                json=body,
            )
        except httpx.TimeoutException as e:
            raise GeminiError(f"Gemini timeout: {e}") from e
        except httpx.RequestError as e:
            raise GeminiError(f"Gemini request failed: {e}") from e

        if r.status_code != 200:
            logger.warning("[Gemini] Non-200 response: %s - %s", r.status_code, (r.text or "")[:300])
            raise GeminiError(f"Gemini returned {r.status_code}")

        try:
            data = r.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GeminiError("Gemini response had no text") from e
        if not text or not text.strip():
            raise GeminiError("Gemini returned an empty answer")
        return text
