"""
changegate Router — Model Abstraction

Routes agent calls through LiteLLM so agents never know which
backend serves them. Handles per-role model resolution, transport
error classification, rate-limit retries, structured (JSON) output
with schema-correction retries, and usage tracking.
"""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import litellm
from loguru import logger
from pydantic import BaseModel, ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from changegate.config_loader import ChangegateConfig

T = TypeVar("T", bound=BaseModel)

LLMErrorKind = Literal["connection", "timeout", "rate_limit", "invalid_response", "schema_validation"]


class LLMError(Exception):
    """A failed model call, classified by kind."""

    def __init__(self, kind: LLMErrorKind, message: str, details: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0

    def record(self, response: Any) -> None:
        """Record token usage (and cost, where LiteLLM knows the model) from a response."""
        usage = getattr(response, "usage", None)
        if usage:
            self.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as e:
            # Local models have no pricing entry
            logger.trace(f"[ROUTER] No cost data: {e}")

        self.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.total_tokens,
            "estimated_cost": round(self.estimated_cost, 4),
            "call_count": self.call_count,
        }


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```$", re.DOTALL | re.MULTILINE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def extract_json(text: str) -> Any:
    """
    Parse JSON out of a model response.

    Tolerates markdown fences and prose around a single top-level object.
    Raises json.JSONDecodeError when nothing parseable is found.
    """
    cleaned = text.strip()

    fence = _FENCE_RE.search(cleaned)
    if fence and fence.group(1).strip():
        cleaned = fence.group(1).strip()

    obj = _OBJECT_RE.search(cleaned)
    if obj:
        cleaned = obj.group(0)

    return json.loads(cleaned)


def _format_validation_error(error: ValidationError) -> str:
    return "\n".join(
        f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()
    )


def _classify(error: Exception, base_url: str | None) -> LLMError:
    # litellm.Timeout derives from the OpenAI connection error; check it first.
    if isinstance(error, litellm.Timeout):
        return LLMError("timeout", "LLM request timed out", str(error))
    if isinstance(error, litellm.APIConnectionError):
        return LLMError("connection", f"Failed to connect to LLM server at {base_url}", str(error))
    if isinstance(error, litellm.RateLimitError):
        return LLMError("rate_limit", "LLM rate limit hit", str(error))
    return LLMError("invalid_response", "Unexpected LLM error", str(error))


def _is_rate_limited(error: BaseException) -> bool:
    return isinstance(error, LLMError) and error.kind == "rate_limit"


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    latency_ms: int = 0


class Router:
    """
    Model router.

    Agents call `await router.generate(role, messages)` for text and
    `await router.generate_structured(role, messages, Schema)` for
    validated JSON output.
    """

    ROLES = ("planner", "architect", "coder", "reviewer")

    def __init__(self, config: ChangegateConfig):
        self.config = config
        self.usage = UsageRecord()
        litellm.suppress_debug_info = True

    def resolve_model(self, role: str) -> str:
        """Resolve an agent role to a model string.

        Raises:
            ValueError: If the role is unknown.
        """
        if role not in self.ROLES:
            raise ValueError(f"Unknown agent role: {role}. Known: {list(self.ROLES)}")
        return self.config.model_for(role)

    def _build_kwargs(self, model: str, messages: list[dict[str, str]]) -> dict[str, Any]:
        llm = self.config.llm
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": llm.max_tokens,
            "temperature": llm.temperature,
            "timeout": llm.timeout,
        }
        if llm.base_url:
            kwargs["api_base"] = llm.base_url
            kwargs["api_key"] = llm.api_key or "not-needed"
        elif llm.api_key:
            kwargs["api_key"] = llm.api_key
        return kwargs

    @retry(
        retry=retry_if_exception(_is_rate_limited),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def generate(self, role: str, messages: list[dict[str, str]]) -> RouterResponse:
        """Send a completion request and return the raw text.

        Raises:
            LLMError: classified transport or provider failure.
        """
        model = self.resolve_model(role)
        start = time.monotonic()
        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages)")

        try:
            response = await litellm.acompletion(**self._build_kwargs(model, messages))
        except (
            litellm.Timeout,
            litellm.APIConnectionError,
            litellm.RateLimitError,
            litellm.APIError,
            litellm.BadRequestError,
            litellm.AuthenticationError,
            litellm.NotFoundError,
            litellm.ServiceUnavailableError,
            litellm.InternalServerError,
        ) as e:
            raise _classify(e, self.config.llm.base_url) from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.usage.record(response)

        try:
            content = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as e:
            raise LLMError("invalid_response", "LLM response had no message content", str(e)) from e

        logger.debug(f"[ROUTER] {role} complete — {self.usage.total_tokens} tokens, {elapsed_ms}ms")

        usage = getattr(response, "usage", None)
        return RouterResponse(
            content=content,
            model=model,
            tokens_used=getattr(usage, "total_tokens", 0) or 0,
            latency_ms=elapsed_ms,
        )

    async def generate_structured(
        self,
        role: str,
        messages: list[dict[str, str]],
        schema: type[T],
        retries: int | None = None,
    ) -> T:
        """
        Request JSON output matching `schema`.

        Invalid JSON or schema mismatches are fed back to the model as a
        correction message, up to `retries` attempts. Connection errors
        are raised immediately.

        Raises:
            LLMError: `connection` at once; `schema_validation` once the
                attempts are exhausted.
        """
        max_attempts = retries or self.config.limits.max_schema_retries
        last_error: str | None = None

        for attempt in range(max_attempts):
            current = list(messages)
            if attempt > 0 and last_error:
                current.append({
                    "role": "user",
                    "content": (
                        f"Your previous response was invalid. Error: {last_error}\n\n"
                        "Please respond with valid JSON only. No markdown fences, no explanations."
                    ),
                })

            try:
                response = await self.generate(role, current)
            except LLMError as e:
                if e.kind == "connection":
                    raise
                last_error = e.message
                logger.warning(f"[ROUTER] {role} attempt {attempt + 1}/{max_attempts} failed: {e}")
                continue

            try:
                return schema.model_validate(extract_json(response.content))
            except json.JSONDecodeError as e:
                last_error = f"JSON parse error: {e}"
            except ValidationError as e:
                last_error = _format_validation_error(e)

            logger.warning(f"[ROUTER] {role} attempt {attempt + 1}/{max_attempts} invalid: {last_error}")
            logger.debug(f"[ROUTER] Raw response: {response.content[:500]}")

        raise LLMError(
            "schema_validation",
            f"Failed to get valid structured output after {max_attempts} attempts",
            last_error,
        )
