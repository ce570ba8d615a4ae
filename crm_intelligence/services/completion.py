"""
Completion-service boundary.

The LLM is a black-box text-completion service. This module turns it
into a capability with three states:

- UNCONFIGURED: no credential, detected up front, no call attempted
- AVAILABLE: the call returned text
- FAILED: the call errored or timed out

Every call is bounded by an explicit timeout. Transport (connection)
errors get exactly one retry before the call is classified FAILED; a
timeout is FAILED immediately. Any other exception from the service is
also FAILED, so callers only ever see a CompletionOutcome.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import anthropic
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from crm_intelligence.core.config import Settings
from crm_intelligence.middleware.logging_config import get_logger, log_ai_query

logger = get_logger(__name__)


class Capability(str, Enum):
    UNCONFIGURED = "unconfigured"
    AVAILABLE = "available"
    FAILED = "failed"


class CompletionError(Exception):
    """Completion call failed in a way a retry will not fix."""


class TransientCompletionError(CompletionError):
    """Transport-level failure; worth a single retry."""


class CompletionTimeoutError(CompletionError):
    """Provider-side timeout."""


@dataclass(frozen=True)
class CompletionResponse:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionService(Protocol):
    model: str

    async def complete(self, prompt: str, max_tokens: int) -> CompletionResponse:
        ...


class AnthropicCompletionService:
    """Claude via the Anthropic SDK, with SDK retries disabled (retry policy lives in CompletionClient)."""

    def __init__(self, api_key: str, model: str, timeout_seconds: float):
        self.model = model
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=timeout_seconds,
            max_retries=0,
        )

    async def complete(self, prompt: str, max_tokens: int) -> CompletionResponse:
        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=0.2,
                messages=[
                    {"role": "user", "content": prompt}
                ]
            )
        except anthropic.APITimeoutError as e:
            raise CompletionTimeoutError(str(e)) from e
        except anthropic.APIConnectionError as e:
            raise TransientCompletionError(str(e)) from e
        except anthropic.APIError as e:
            raise CompletionError(f"{type(e).__name__}: {e}") from e

        text = "".join(
            block.text for block in message.content if getattr(block, "type", None) == "text"
        ).strip()
        usage = getattr(message, "usage", None)
        return CompletionResponse(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )


@dataclass(frozen=True)
class CompletionOutcome:
    capability: Capability
    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.capability is Capability.AVAILABLE and self.text is not None


class CompletionClient:
    """Timeout, retry and capability tracking around a CompletionService."""

    def __init__(
        self,
        service: Optional[CompletionService],
        timeout_seconds: float = 20.0,
        max_retries: int = 1,
        default_max_tokens: int = 800,
    ):
        self._service = service
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.default_max_tokens = default_max_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompletionClient":
        service = None
        if settings.ai_configured:
            service = AnthropicCompletionService(
                api_key=settings.anthropic_api_key,
                model=settings.ai_model,
                timeout_seconds=settings.ai_timeout_seconds,
            )
        else:
            logger.warning("ai_not_configured", message="ANTHROPIC_API_KEY not set - AI insights disabled")
        return cls(
            service,
            timeout_seconds=settings.ai_timeout_seconds,
            default_max_tokens=settings.ai_max_tokens,
        )

    @property
    def configured(self) -> bool:
        return self._service is not None

    @property
    def capability(self) -> Capability:
        """Presence check only; FAILED is reported per call in CompletionOutcome."""
        return Capability.AVAILABLE if self._service else Capability.UNCONFIGURED

    @property
    def model(self) -> str:
        return getattr(self._service, "model", "unconfigured")

    async def complete(
        self,
        prompt: str,
        operation: str,
        max_tokens: Optional[int] = None,
    ) -> CompletionOutcome:
        if self._service is None:
            return CompletionOutcome(Capability.UNCONFIGURED, error="completion service not configured")

        max_tokens = max_tokens or self.default_max_tokens
        start = time.time()
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(1 + self.max_retries),
                retry=retry_if_exception_type(TransientCompletionError),
                before_sleep=_log_retry(operation),
                reraise=True,
            ):
                with attempt:
                    response = await asyncio.wait_for(
                        self._service.complete(prompt, max_tokens),
                        timeout=self.timeout_seconds,
                    )
        except (asyncio.TimeoutError, CompletionTimeoutError):
            return self._failed(operation, start, f"timed out after {self.timeout_seconds}s")
        except CompletionError as e:
            return self._failed(operation, start, str(e))
        except Exception as e:
            logger.error("ai_query_unexpected_error", operation=operation,
                         error_type=type(e).__name__, exc_info=True)
            return self._failed(operation, start, f"{type(e).__name__}: {e}")

        log_ai_query(
            self.model,
            operation,
            duration=time.time() - start,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        return CompletionOutcome(Capability.AVAILABLE, text=response.text)

    def _failed(self, operation: str, start: float, error: str) -> CompletionOutcome:
        log_ai_query(self.model, operation, duration=time.time() - start, error=error)
        return CompletionOutcome(Capability.FAILED, error=error)


def _log_retry(operation: str):
    def log(retry_state: RetryCallState) -> None:
        logger.warning(
            "ai_query_retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )
    return log
