"""Production client that speaks an OpenAI-compatible chat completions API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Optional

from .llm_client import LLMAPIError, LLMClient, LLMTransportError

__all__ = ["ChatCompletionsClient", "DEFAULT_BASE_URL", "DEFAULT_MODEL", "resolve_api_key"]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://open.bigmodel.cn/api/paas/v4"
DEFAULT_MODEL = "glm-4-flash"
API_KEY_ENV_VARS = ("AIDEV_API_KEY", "GLM_API_KEY", "ZHIPUAI_API_KEY")

Transport = Callable[[Dict[str, Any], float], str]


def resolve_api_key(explicit: Optional[str] = None) -> Optional[str]:
    """Return the first configured API key, preferring an explicit value."""
    if explicit:
        return explicit
    for name in API_KEY_ENV_VARS:
        value = os.getenv(name)
        if value:
            return value
    return None


class ChatCompletionsClient(LLMClient):
    """Thin adapter around a ``/chat/completions`` endpoint."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        max_attempts: int = 1,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = resolve_api_key(api_key)
        self._base_url = base_url.rstrip("/")
        timeout_override = os.getenv("AIDEV_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                pass
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError(
                "An API key is required when using the default transport "
                f"(set one of {', '.join(API_KEY_ENV_VARS)} or pass --api-key)."
            )

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/chat/completions"

    def _raw_invoke(self, payload: Dict[str, Any], *, timeout: float | None = None) -> str:
        """Send the request over the configured transport."""
        effective_timeout = self._timeout if timeout is None else max(min(self._timeout, timeout), 0.001)
        try:
            return self._transport(payload, effective_timeout)
        except (LLMTransportError, LLMAPIError):
            raise
        except Exception as error:  # pragma: no cover - unexpected transport failure
            raise LLMTransportError(f"Transport rejected the request: {error}") from error

    def _http_transport(self, payload: Dict[str, Any], timeout: float) -> str:
        """Default HTTP transport posting JSON with bearer authentication."""
        import urllib.error
        import urllib.request

        if os.getenv("AIDEV_DEBUG_PAYLOAD"):
            LOGGER.debug("Request payload:\n%s", json.dumps(payload, indent=2, sort_keys=True))

        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self.endpoint,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
            },
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                raw = response.read()
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Request timeout after {timeout:.0f}s.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            body = error.read().decode("utf-8", errors="ignore")
            raise _http_error(error.code, body) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Connection failed: {error.reason}") from error

        return raw.decode("utf-8")


def _http_error(status: int, body: str) -> LLMAPIError:
    """Translate an HTTP error status into an API error with classifiable text."""
    message = body.strip()
    code: Any = None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        code = data["error"].get("code")
        message = str(data["error"].get("message") or message)
    label = f"HTTP {status}"
    if status == 429:
        label = f"{label} (rate limit)"
    return LLMAPIError(f"{label}: {message}", code=code, http_status=status)
