"""
Text Analysis Provider — Gemini integration.

The provider takes a free-text prompt and returns free text that is expected
(but not guaranteed) to contain one JSON object. Calls are single-shot with
a bounded timeout; every failure surfaces as ProviderError so callers can
fall back without knowing transport details.
"""

from abc import ABC, abstractmethod

import httpx
import structlog

from core.config import Settings
from core.errors import ProviderError

logger = structlog.get_logger()


class TextAnalysisProvider(ABC):
    """Anything that turns a prompt into text."""

    name: str = "provider"

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Return the provider's raw text output. Raises ProviderError on any failure."""
        ...


class GeminiProvider(TextAnalysisProvider):
    """Gemini ``generateContent`` over REST."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        api_base: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float = 0.3,
        top_p: float = 0.8,
        max_output_tokens: int = 1000,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.temperature = temperature
        self.top_p = top_p
        self.max_output_tokens = max_output_tokens
        self.timeout = timeout
        self._transport = transport
        if not self.api_key:
            logger.warning("gemini.api_key_missing", msg="analysis will use fallback payloads")

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeminiProvider":
        return cls(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            api_base=settings.gemini_api_base,
            temperature=settings.gemini_temperature,
            top_p=settings.gemini_top_p,
            max_output_tokens=settings.gemini_max_output_tokens,
            timeout=settings.gemini_timeout_seconds,
        )

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    async def generate(self, prompt: str) -> str:
        if not self.api_key:
            raise ProviderError("Gemini API key is not configured")

        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "topP": self.top_p,
                "maxOutputTokens": self.max_output_tokens,
            },
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.endpoint,
                    params={"key": self.api_key},
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            logger.error("gemini.timeout", model=self.model, timeout=self.timeout)
            raise ProviderError("Gemini request timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "gemini.http_error",
                model=self.model,
                status=exc.response.status_code,
                body=exc.response.text[:500],
            )
            raise ProviderError(f"Gemini returned HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("gemini.request_failed", model=self.model, error=str(exc))
            raise ProviderError("Gemini request failed") from exc

        text = _extract_text(data)
        if not text:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise ProviderError("Gemini returned no text", {"block_reason": block_reason})
        return text


def _extract_text(data: dict) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part, dict))
