"""Chat client base class shared by all code-generation integrations."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Sequence

from ..tools.commands import CancellationToken

__all__ = [
    "ChatRequest",
    "GenerationClient",
    "LLMAPIError",
    "LLMCancelledError",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMTransportError",
    "RETRYABLE_MARKERS",
    "is_retryable_error",
]

LOGGER = logging.getLogger(__name__)

RETRYABLE_MARKERS: tuple[str, ...] = ("timeout", "connection", "rate limit", "502", "503")

_POLL_INTERVAL = 0.1


class LLMClientError(RuntimeError):
    """Base error raised for code-generation service failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the service returns a payload without usable text."""


class LLMAPIError(LLMClientError):
    """Raised when the service answers with an explicit error object."""

    def __init__(self, message: str, *, code: Any = None, http_status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class LLMCancelledError(LLMClientError):
    """Raised when the caller's token is cancelled around a service call."""


def is_retryable_error(
    error: BaseException | str,
    markers: Sequence[str] = RETRYABLE_MARKERS,
) -> bool:
    """Return True when the error text carries one of the transient ``markers``."""
    message = str(error).lower()
    if not message:
        return False
    return any(marker in message for marker in markers)


class GenerationClient(Protocol):
    """Capability that turns a prompt into generated text.

    ``chat`` returns the assistant message text or raises
    :class:`LLMClientError`; callers classify the error text with
    :func:`is_retryable_error`.
    """

    def chat(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        token: CancellationToken | None = None,
    ) -> str: ...


@dataclass(slots=True)
class ChatRequest:
    """Chat request payload sent to a completion endpoint."""

    prompt: str
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self, default_model: str) -> Dict[str, Any]:
        """Render a transport-ready payload for the chat completions API."""
        messages: list[Dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": self.prompt})

        payload: Dict[str, Any] = {
            "model": self.model or default_model,
            "messages": messages,
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if self.metadata:
            max_metadata_len = 512
            serialised_metadata: Dict[str, str] = {}
            for key, value in self.metadata.items():
                formatted = value if isinstance(value, str) else json.dumps(
                    value, separators=(",", ":"), sort_keys=True
                )
                if len(formatted) > max_metadata_len:
                    formatted = f"{formatted[: max_metadata_len - 3]}..."
                serialised_metadata[key] = formatted
            payload["metadata"] = serialised_metadata
        return payload


class LLMClient:
    """High-level helper that sends chat requests and extracts the reply text."""

    def __init__(self, model: str, *, max_attempts: int = 1, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max(max_attempts, 1)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def chat(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        token: CancellationToken | None = None,
    ) -> str:
        """Send ``prompt`` and return the assistant reply."""
        return self.invoke(ChatRequest(prompt=prompt, system_prompt=system_prompt), token=token)

    def invoke(self, request: ChatRequest, *, token: CancellationToken | None = None) -> str:
        """Invoke the model, retrying transient transport failures in place."""
        payload = request.to_payload(self._model)
        last_error: LLMClientError | None = None

        for attempt in range(1, self._max_attempts + 1):
            self._check_token(token)
            try:
                raw = self._call_transport(payload, token)
                self._check_token(token)
                text = self._extract_text(raw)
            except (LLMTransportError, LLMAPIError) as error:
                last_error = error
                LOGGER.debug("Chat attempt %d/%d failed: %s", attempt, self._max_attempts, error)
                if attempt >= self._max_attempts or not is_retryable_error(error):
                    break
                time.sleep(self._retry_delay)
                continue
            LOGGER.debug("Received %d chars from %s", len(text), payload["model"])
            return text

        assert last_error is not None
        raise last_error

    def _call_transport(self, payload: Dict[str, Any], token: CancellationToken | None) -> str:
        """Run the transport on a worker thread so the token is observed while it blocks."""
        if token is None:
            return self._raw_invoke(payload)
        outcome: Dict[str, Any] = {}

        def _target() -> None:
            try:
                outcome["raw"] = self._raw_invoke(payload, timeout=token.remaining())
            except Exception as error:  # noqa: BLE001 - re-raised on the calling thread
                outcome["error"] = error

        worker = threading.Thread(target=_target, name="llm-transport", daemon=True)
        worker.start()
        while worker.is_alive():
            worker.join(_POLL_INTERVAL)
            if worker.is_alive():
                # The abandoned request finishes or times out on its own.
                self._check_token(token)
        if "error" in outcome:
            raise outcome["error"]
        return outcome["raw"]

    def _raw_invoke(self, payload: Dict[str, Any], *, timeout: float | None = None) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")

    @staticmethod
    def _check_token(token: CancellationToken | None) -> None:
        if token is None:
            return
        if token.cancelled:
            raise LLMCancelledError("Generation request cancelled.")
        if token.expired:
            raise LLMTransportError("Generation request timeout: deadline exceeded.")

    @staticmethod
    def _extract_text(raw_response: str) -> str:
        """Extract the assistant message from a chat completions payload."""
        text = raw_response.strip()
        if not text:
            raise LLMResponseFormatError("Service returned an empty response.")
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            # Plain-text transports hand back the message directly.
            return raw_response

        if not isinstance(data, dict):
            raise LLMResponseFormatError(f"Unexpected response payload: {text[:200]}")

        error = data.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or "unknown error")
            code = error.get("code")
            raise LLMAPIError(f"API error: code={code}, message={message}", code=code)

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise LLMResponseFormatError("No choices in response.")
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        content = message.get("content") if message else first.get("text")
        if not isinstance(content, str):
            raise LLMResponseFormatError("First choice did not contain message content.")
        return content
