from __future__ import annotations

from typing import Any, Protocol

import httpx
from opentelemetry import trace

from iris_crm.context import get_correlation_id


tracer = trace.get_tracer("iris.insights.client")


class AdviceClientError(Exception):
    """Raised when the language model cannot produce advice for a prompt."""


class AdviceClient(Protocol):
    def generate(self, prompt: str) -> str: ...


class NullAdviceClient:
    def generate(self, prompt: str) -> str:
        raise AdviceClientError("no language model configured")


class GeminiAdviceClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _payload(self, prompt: str) -> dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": prompt}], "role": "user"}],
            "generationConfig": {"temperature": 0.7, "topK": 40, "topP": 0.95, "maxOutputTokens": 200},
        }

    def generate(self, prompt: str) -> str:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        with tracer.start_as_current_span("insights.gemini.generate") as span:
            span.set_attribute("model", self.model)
            correlation_id = get_correlation_id()
            if correlation_id:
                span.set_attribute("correlation_id", correlation_id)
            try:
                with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                    response = client.post(
                        url,
                        headers={"x-goog-api-key": self.api_key},
                        json=self._payload(prompt),
                    )
                    response.raise_for_status()
                    data = response.json()
            except httpx.HTTPStatusError as exc:
                span.set_attribute("http.status_code", exc.response.status_code)
                raise AdviceClientError(f"gemini returned status {exc.response.status_code}") from exc
            except httpx.HTTPError as exc:
                # httpx error text embeds the request url
                raise AdviceClientError(f"gemini request failed: {type(exc).__name__}") from exc
            except ValueError as exc:
                raise AdviceClientError("gemini returned malformed JSON") from exc

        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AdviceClientError("gemini response carried no text") from exc
        if not isinstance(text, str) or not text.strip():
            raise AdviceClientError("gemini response carried no text")
        return text.strip()
