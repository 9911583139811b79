"""Multi-provider inference client.

This module provides an async client that speaks the two wire formats the
engine needs:
- OpenAI-compatible ``/chat/completions`` (Google's OpenAI gateway, OpenRouter,
  OpenAI, Groq, xAI and our own gateway) for text generation
- Gemini ``generateContent`` with inline media for vision and audio

Credentials are never held by the client; every call receives the secret of
the credential the caller acquired for that single attempt.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from app.config import Settings, get_settings

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Base exception for LLM-related errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Raised when connection to the provider fails or times out."""
    pass


class LLMRateLimitError(LLMError):
    """Raised when the provider answers 429."""
    pass


class LLMQuotaError(LLMRateLimitError):
    """Raised when a 429 mentions exhausted quota rather than a burst limit."""
    pass


class LLMAuthError(LLMError):
    """Raised when the provider rejects the credential (401/403)."""
    pass


class LLMServerError(LLMError):
    """Raised when the provider answers with a 5xx status."""
    pass


class LLMResponseError(LLMError):
    """Raised when the provider returns an invalid or empty response."""
    pass


class LLMProviderError(LLMError):
    """Raised when a provider id has no known endpoint."""
    pass


# Dashboard-issued keys are served by our own OpenAI-compatible gateway
OWN_GATEWAY_PROVIDER = "salesmanchatbot"

SUPPORTED_PROVIDERS = ("google", "openrouter", "openai", "groq", "xai", OWN_GATEWAY_PROVIDER)


@dataclass
class Completion:
    """Normalized result of one inference call."""

    content: str
    token_usage: int
    model: str


def estimate_token_usage(
    messages: list[dict[str, Any]],
    reply_text: str | None,
    reported: int = 0,
) -> int:
    """Return the provider-reported usage, or a chars/4 estimate when it is missing."""
    if reported and reported > 0:
        return reported
    input_chars = sum(
        len(m["content"]) for m in messages if isinstance(m.get("content"), str)
    )
    output_chars = len(reply_text) if reply_text else 0
    return -(-(input_chars + output_chars) // 4)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.text[:300]


def raise_for_provider_status(response: httpx.Response, provider: str) -> None:
    """Translate a non-2xx provider response into the LLMError taxonomy."""
    status = response.status_code
    if status < 400:
        return

    message = f"{provider} API error {status}: {_error_message(response)}"
    if status == 429:
        if "quota" in message.lower():
            raise LLMQuotaError(message, status)
        raise LLMRateLimitError(message, status)
    if status in (401, 403):
        raise LLMAuthError(message, status)
    if status >= 500:
        raise LLMServerError(message, status)
    raise LLMError(message, status)


class InferenceClient:
    """Async client for OpenAI-compatible and Gemini-native inference endpoints.

    Usage:
        client = InferenceClient()
        completion = await client.complete(
            messages=[{"role": "user", "content": "Hello"}],
            model="gemini-2.5-flash",
            provider="google",
            api_key=credential.secret,
        )
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = http_client or httpx.AsyncClient(timeout=60.0)

    def supports(self, provider: str) -> bool:
        return provider in SUPPORTED_PROVIDERS

    def base_url_for(self, provider: str) -> str:
        """Resolve the OpenAI-compatible endpoint base for a provider id.

        Raises:
            LLMProviderError: If the provider has no configured endpoint.
        """
        routes = {
            "google": self._settings.google_openai_base_url,
            "openrouter": self._settings.openrouter_base_url,
            "openai": self._settings.openai_base_url,
            "groq": self._settings.groq_base_url,
            "xai": self._settings.xai_base_url,
            OWN_GATEWAY_PROVIDER: self._settings.salesmanchatbot_api_base_url,
        }
        if provider not in routes:
            raise LLMProviderError(f"Unknown provider: {provider}")
        return routes[provider].rstrip("/")

    def _headers(self, provider: str, api_key: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        if provider == "openrouter":
            headers["HTTP-Referer"] = self._settings.openrouter_referer
            headers["X-Title"] = self._settings.openrouter_title
        return headers

    async def _post(self, provider: str, url: str, **kwargs: Any) -> dict[str, Any]:
        if kwargs.get("timeout") is None:
            # httpx treats an explicit None as "no timeout"
            kwargs.pop("timeout", None)
        try:
            response = await self._client.post(url, **kwargs)
        except httpx.TimeoutException as e:
            raise LLMConnectionError(f"Timeout calling {provider}: {e}") from e
        except httpx.RequestError as e:
            raise LLMConnectionError(f"Failed to connect to {provider}: {e}") from e

        raise_for_provider_status(response, provider)

        try:
            return response.json()
        except ValueError as e:
            raise LLMResponseError(f"{provider} returned non-JSON body") from e

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str,
        *,
        provider: str,
        api_key: str,
        structured_output: bool = False,
        timeout: float | None = None,
    ) -> Completion:
        """Send a chat completion request to an OpenAI-compatible provider.

        Args:
            messages: List of message objects with role and content.
            model: Provider model id.
            provider: Provider id used to pick the endpoint base and headers.
            api_key: Secret of the credential used for this attempt.
            structured_output: Request ``json_object`` response format.
            timeout: Per-request timeout in seconds.

        Returns:
            Completion with the message content and total token usage.

        Raises:
            LLMAuthError, LLMRateLimitError, LLMServerError, LLMConnectionError,
            LLMResponseError: depending on how the provider failed.
        """
        url = f"{self.base_url_for(provider)}/chat/completions"
        body: dict[str, Any] = {"model": model, "messages": messages}
        if structured_output:
            body["response_format"] = {"type": "json_object"}

        logger.debug(
            "Sending chat completion request",
            extra={"provider": provider, "model": model, "message_count": len(messages)},
        )

        data = await self._post(
            provider,
            url,
            headers=self._headers(provider, api_key),
            json=body,
            timeout=timeout,
        )

        choices = data.get("choices") or []
        if not choices:
            raise LLMResponseError(f"{provider} returned no choices")

        content = (choices[0].get("message") or {}).get("content") or ""
        usage = (data.get("usage") or {}).get("total_tokens") or 0
        return Completion(content=content, token_usage=int(usage), model=model)

    async def complete_with_media(
        self,
        prompt: str,
        model: str,
        media_bytes: bytes,
        mime_type: str,
        *,
        provider: str,
        api_key: str,
        timeout: float | None = None,
    ) -> Completion:
        """Run a prompt against inline media (image or audio).

        Google models go through native ``generateContent`` with ``inline_data``;
        every other provider receives an OpenAI-style ``image_url`` data URI
        (images) or ``input_audio`` part (audio).
        """
        encoded = base64.b64encode(media_bytes).decode("ascii")

        if provider == "google":
            url = f"{self._settings.google_base_url.rstrip('/')}/models/{model}:generateContent"
            payload = {
                "contents": [{
                    "parts": [
                        {"text": prompt},
                        {"inline_data": {"mime_type": mime_type, "data": encoded}},
                    ]
                }]
            }
            data = await self._post(
                provider,
                url,
                headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
                json=payload,
                timeout=timeout,
            )
            candidates = data.get("candidates") or []
            parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
            text = parts[0].get("text") if parts else None
            if not text:
                raise LLMResponseError(f"Empty response from {model}")
            usage = (data.get("usageMetadata") or {}).get("totalTokenCount") or 0
            return Completion(content=text, token_usage=int(usage), model=model)

        if mime_type.startswith("audio/"):
            part = {
                "type": "input_audio",
                "input_audio": {"data": encoded, "format": mime_type.split("/")[-1]},
            }
        else:
            part = {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}}

        messages = [
            {"role": "system", "content": prompt},
            {"role": "user", "content": [part]},
        ]
        completion = await self.complete(
            messages, model, provider=provider, api_key=api_key, timeout=timeout
        )
        if not completion.content:
            raise LLMResponseError(f"Empty response from {model}")
        return completion

    async def transcribe(
        self,
        audio_bytes: bytes,
        mime_type: str,
        *,
        api_key: str,
        model: str,
        language: str,
        prompt: str,
        timeout: float | None = None,
    ) -> str:
        """Transcribe audio with Groq's Whisper speech-to-text endpoint."""
        extension = mime_type.split("/")[-1]
        data = await self._post(
            "groq",
            f"{self._settings.groq_base_url.rstrip('/')}/audio/transcriptions",
            headers={"Authorization": f"Bearer {api_key}"},
            files={"file": (f"audio.{extension}", audio_bytes, mime_type)},
            data={"model": model, "language": language, "prompt": prompt, "temperature": "0"},
            timeout=timeout,
        )
        return (data.get("text") or "").strip()

    async def list_models(self) -> list[dict[str, Any]]:
        """Fetch the public OpenRouter model catalog."""
        url = f"{self._settings.openrouter_base_url.rstrip('/')}/models"
        try:
            response = await self._client.get(url, timeout=30.0)
        except httpx.RequestError as e:
            raise LLMConnectionError(f"Failed to fetch model catalog: {e}") from e
        raise_for_provider_status(response, "openrouter")

        models = response.json().get("data")
        if not isinstance(models, list):
            raise LLMResponseError("Invalid model catalog format")
        return models

    async def download(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> tuple[bytes, str | None]:
        """Download a media reference; returns the body and its content type."""
        kwargs: dict[str, Any] = {"headers": headers, "follow_redirects": True}
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await self._client.get(url, **kwargs)
        response.raise_for_status()
        return response.content, response.headers.get("content-type")

    async def close(self) -> None:
        """Close the client and release resources."""
        await self._client.aclose()

    async def __aenter__(self) -> "InferenceClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
