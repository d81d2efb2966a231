"""Chat-completion adapter with bounded retries and exponential backoff.

The adapter knows nothing about diagnoses: it sends messages, retries
transient provider failures and hands back the assistant text together with
usage metadata.  The ``openai`` SDK is used against any OpenAI-compatible
endpoint (OpenRouter by default) with the SDK's own retries disabled so the
retry budget below is the only one in play.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import openai
import structlog

from . import metrics
from .config import Settings, get_settings
from .errors import AIClientError, ErrorCode, RequestCancelled


logger = structlog.get_logger(__name__)

Message = Dict[str, str]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.ai_max_retries,
            base_delay=settings.ai_base_delay,
            multiplier=settings.ai_backoff_multiplier,
            max_delay=settings.ai_max_delay,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""

        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))

    def worst_case_seconds(self, timeout: float) -> float:
        """Upper bound on the latency of one logical call."""

        backoff = sum(self.delay_for(attempt) for attempt in range(1, self.max_retries + 1))
        return timeout * self.max_attempts + backoff


@dataclass
class Completion:
    text: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    provider_request_id: Optional[str] = None
    processing_time_ms: int = 0
    attempts: int = 1


@dataclass
class _Failure:
    kind: str
    message: str
    retryable: bool
    status_code: Optional[int] = None

    @property
    def is_timeout(self) -> bool:
        return self.kind == "timeout"


def _classify(exc: BaseException) -> _Failure:
    if isinstance(exc, openai.APITimeoutError):
        return _Failure("timeout", "AI request timed out", True)
    if isinstance(exc, openai.APIConnectionError):
        return _Failure("connection", f"Connection to AI provider failed: {exc}", True)
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        if status == 401:
            return _Failure("auth", "Invalid or missing API key", False, status)
        if status == 402:
            return _Failure("quota", "AI provider quota exceeded or payment required", False, status)
        if status == 429:
            return _Failure("rate_limited", "AI provider rate limit exceeded", True, status)
        if status >= 500:
            return _Failure("server_error", f"AI provider returned HTTP {status}", True, status)
        return _Failure("client_error", f"AI provider rejected the request (HTTP {status})", False, status)
    if isinstance(exc, TimeoutError):
        return _Failure("timeout", "AI request timed out", True)
    if isinstance(exc, ConnectionError):
        return _Failure("connection", f"Connection to AI provider failed: {exc}", True)
    return _Failure("unexpected", f"AI provider call failed: {exc}", False)


def _usage_dict(usage: Any) -> Dict[str, int]:
    if usage is None:
        return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    return {
        name: int(getattr(usage, name, 0) or 0)
        for name in ("prompt_tokens", "completion_tokens", "total_tokens")
    }


def _message_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None) if message is not None else None
    return content.strip() if isinstance(content, str) else ""


class ChatCompletionClient:
    """Send chat messages to the configured model and return the assistant text."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        client: Any = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._lock = threading.Lock()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self._settings)
        self._sleep = sleep

    @property
    def timeout_seconds(self) -> float:
        return self._settings.ai_timeout_seconds

    @property
    def model(self) -> str:
        return self._settings.ai_model

    def worst_case_seconds(self) -> float:
        return self.retry_policy.worst_case_seconds(self.timeout_seconds)

    def _sdk(self) -> Any:
        with self._lock:
            if self._client is None:
                api_key = self._settings.ai_api_key
                if not api_key:
                    raise AIClientError(ErrorCode.PROVIDER_ERROR, "Invalid or missing API key")
                self._client = openai.OpenAI(
                    api_key=api_key,
                    base_url=self._settings.ai_base_url,
                    timeout=self._settings.ai_timeout_seconds,
                    max_retries=0,
                    default_headers={"X-Title": "pharmdx"},
                )
            return self._client

    def _wait(self, delay: float, cancel_event: Optional[threading.Event], request_id: str) -> None:
        if cancel_event is None:
            self._sleep(delay)
            return
        if cancel_event.wait(delay):
            raise RequestCancelled(request_id)

    def complete(
        self,
        messages: List[Message],
        *,
        request_id: str = "",
        cancel_event: Optional[threading.Event] = None,
    ) -> Completion:
        """Run one logical completion call, retrying transient failures.

        Raises :class:`AIClientError` once the call has definitively failed
        and :class:`RequestCancelled` if ``cancel_event`` is set while
        waiting between attempts.
        """

        sdk = self._sdk()
        policy = self.retry_policy
        model = self._settings.ai_model
        started = time.monotonic()
        failure: Optional[_Failure] = None
        attempt = 0

        try:
            while attempt < policy.max_attempts:
                attempt += 1
                try:
                    response = sdk.chat.completions.create(
                        model=model,
                        messages=messages,
                        max_tokens=self._settings.ai_max_tokens,
                        temperature=self._settings.ai_temperature,
                        timeout=self.timeout_seconds,
                    )
                except Exception as exc:
                    failure = _classify(exc)
                    logger.warning(
                        "ai_attempt_failed",
                        request_id=request_id,
                        attempt=attempt,
                        kind=failure.kind,
                        status_code=failure.status_code,
                        retryable=failure.retryable,
                    )
                    if not failure.retryable or attempt >= policy.max_attempts:
                        break
                    delay = policy.delay_for(attempt)
                    metrics.AI_RETRIES_TOTAL.labels(reason=failure.kind).inc()
                    self._wait(delay, cancel_event, request_id)
                    continue

                provider_request_id = getattr(response, "id", None)
                text = _message_text(response)
                if not text:
                    metrics.AI_CALLS_TOTAL.labels(outcome="empty_response").inc()
                    logger.error(
                        "ai_empty_response",
                        request_id=request_id,
                        provider_request_id=provider_request_id,
                        attempt=attempt,
                    )
                    raise AIClientError(
                        ErrorCode.EMPTY_RESPONSE,
                        "AI provider returned no content",
                        attempts=attempt,
                    )

                elapsed_ms = int((time.monotonic() - started) * 1000)
                metrics.AI_CALLS_TOTAL.labels(outcome="success").inc()
                logger.info(
                    "ai_call_succeeded",
                    request_id=request_id,
                    provider_request_id=provider_request_id,
                    attempts=attempt,
                    processing_time_ms=elapsed_ms,
                )
                return Completion(
                    text=text,
                    model=getattr(response, "model", None) or model,
                    usage=_usage_dict(getattr(response, "usage", None)),
                    provider_request_id=provider_request_id,
                    processing_time_ms=elapsed_ms,
                    attempts=attempt,
                )
        finally:
            metrics.AI_CALL_LATENCY.labels(model=model).observe(time.monotonic() - started)

        if failure is None:
            # Only reachable with a retry policy that allows no attempts.
            raise AIClientError(
                ErrorCode.INTERNAL_ERROR,
                "AI call finished without a response or a recorded failure",
                attempts=attempt,
            )
        exhausted = failure.retryable
        code = ErrorCode.AI_TIMEOUT if failure.is_timeout else ErrorCode.PROVIDER_ERROR
        metrics.AI_CALLS_TOTAL.labels(outcome=code.value.lower()).inc()
        logger.error(
            "ai_call_failed",
            request_id=request_id,
            attempts=attempt,
            code=code.value,
            exhausted=exhausted,
            status_code=failure.status_code,
        )
        message = failure.message
        if exhausted:
            message = f"{failure.message} after {attempt} attempts"
        raise AIClientError(
            code,
            message,
            status_code=failure.status_code,
            attempts=attempt,
            retryable=failure.retryable,
        )


__all__ = ["ChatCompletionClient", "Completion", "RetryPolicy"]
