"""
changegate Agent Roster

Each agent is:
  - A system prompt
  - A structured input (pydantic model)
  - A constrained output schema

Agents are stateless between calls. State lives in the controller.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from loguru import logger
from pydantic import BaseModel

from changegate.router import LLMError, Router

In = TypeVar("In", bound=BaseModel)
Out = TypeVar("Out", bound=BaseModel)

AgentErrorKind = Literal["connection", "timeout", "schema_validation", "tool_error", "unknown"]


class AgentError(Exception):
    """An agent could not produce valid output."""

    def __init__(self, kind: AgentErrorKind, message: str, retryable: bool | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = kind != "connection" if retryable is None else retryable

    @classmethod
    def from_llm_error(cls, error: LLMError) -> "AgentError":
        kind: AgentErrorKind
        if error.kind in ("connection", "timeout", "schema_validation"):
            kind = error.kind
        else:
            kind = "unknown"
        return cls(kind, str(error))


@dataclass
class AgentContext:
    """Shared context passed to every agent invocation."""
    router: Router
    log: Any = field(default=logger)
    conversation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class BaseAgent(ABC, Generic[In, Out]):
    """
    Base class for all changegate agents.

    Subclasses define:
      - role: str — maps to router model
      - system_prompt: str — agent instructions + output schema
      - output_schema — pydantic model the response must match
      - build_messages() — constructs the chat messages
    """

    role: str = "unknown"
    tag: str = "AGENT"
    system_prompt: str = "You are a helpful assistant."
    output_schema: type[BaseModel]

    async def run(self, data: In, context: AgentContext) -> Out:
        """Execute the agent: build messages → structured call → validated output.

        Raises:
            AgentError: on any model failure; `retryable` is False for
                connection failures.
        """
        messages = self.build_messages(data)
        try:
            result = await context.router.generate_structured(self.role, messages, self.output_schema)
        except LLMError as e:
            context.log.error(f"[{self.tag}] Failed: {e}")
            raise AgentError.from_llm_error(e) from e
        self.on_result(result, context)
        return result

    @abstractmethod
    def build_messages(self, data: In) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    def on_result(self, result: Out, context: AgentContext) -> None:
        context.log.info(f"[{self.tag}] Done")

    def _system_msg(self, extra: str = "") -> dict[str, str]:
        content = self.system_prompt
        if extra:
            content += f"\n\n{extra}"
        return {"role": "system", "content": content}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}
