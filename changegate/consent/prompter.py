"""
Interactive approval prompt for a single new dependency.

Answers:
  y  approve once        s  approve for session
  p  approve for project n  reject
  1-9 use the numbered built-in alternative instead

Anything else rejects. Non-interactive mode rejects without reading input.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, TextIO

from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

from changegate.consent.schema import ConsentScope
from changegate.tools.imports import AlternativeInfo

NON_INTERACTIVE_REASON = "non-interactive mode"
CLOSED_REASON = "prompt closed"


class ConsentRequest(BaseModel):
    package: str
    reason: str | None = None
    file_context: list[str] = Field(default_factory=list)
    alternatives: list[AlternativeInfo] = Field(default_factory=list)


class ConsentResponse(BaseModel):
    approved: bool
    scope: ConsentScope = "once"
    use_alternative: str | None = None
    reason: str | None = None


_ANSWERS: dict[str, ConsentResponse] = {
    "y": ConsentResponse(approved=True, scope="once"),
    "yes": ConsentResponse(approved=True, scope="once"),
    "s": ConsentResponse(approved=True, scope="session"),
    "session": ConsentResponse(approved=True, scope="session"),
    "p": ConsentResponse(approved=True, scope="project"),
    "project": ConsentResponse(approved=True, scope="project"),
    "n": ConsentResponse(approved=False, reason="rejected by user"),
    "no": ConsentResponse(approved=False, reason="rejected by user"),
}


class ConsentPrompter:
    """
    Renders the approval panel with rich and reads one answer.

    `stream` replaces stdin (tests feed answers through a StringIO).
    Reads run on a daemon thread so neither the event loop nor interpreter
    shutdown waits on a user who never answers. `close()` releases an open
    prompt with a rejection.
    """

    def __init__(self, console: Console | None = None, stream: TextIO | None = None, store_label: str = "project"):
        self.console = console or Console()
        self.stream = stream
        self.store_label = store_label
        self._closed = False
        self._pending: asyncio.Future | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Reject the open prompt, if any, and every later one."""
        self._closed = True
        pending = self._pending
        if pending is not None and not pending.done():
            try:
                pending.get_loop().call_soon_threadsafe(_resolve, pending, None)
            except RuntimeError:
                pass  # loop already closed

    def _read(self, ask: Callable[[], str]) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def worker() -> None:
            answer, error = None, None
            try:
                answer = ask()
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(_resolve, future, answer, error)
            except RuntimeError:
                pass  # loop already closed

        threading.Thread(target=worker, name="consent-prompt", daemon=True).start()
        return future

    def render(self, request: ConsentRequest) -> None:
        body = f"Package: [bold]{escape(request.package)}[/]"
        if request.reason:
            body += f"\nReason: {escape(request.reason)}"
        if request.file_context:
            body += "\nUsed in: " + escape(", ".join(request.file_context))

        if request.alternatives:
            body += "\n\n[cyan]💡 Built-in alternatives:[/]"
            for i, alt in enumerate(request.alternatives, start=1):
                body += f"\n  {i}. [bold]{escape(alt.module)}[/] — {escape(alt.description)}"
                if alt.min_runtime_version:
                    body += f" (Node ≥ {alt.min_runtime_version})"
                body += f"\n     [dim]{escape(alt.example)}[/]"

        body += (
            "\n\nOptions:"
            "\n  \\[y] Approve once (this operation only)"
            "\n  \\[s] Approve for session (until changegate exits)"
            f"\n  \\[p] Approve for project (saved to {self.store_label})"
            "\n  \\[n] Reject"
        )
        if request.alternatives:
            body += f"\n  \\[1-{len(request.alternatives)}] Use alternative instead"

        self.console.print(Panel(body, title="⚠ Dependency approval required", border_style="yellow"))

    def parse(self, answer: str, request: ConsentRequest) -> ConsentResponse:
        choice = answer.strip().lower()

        if choice.isdigit():
            index = int(choice)
            if 1 <= index <= len(request.alternatives):
                module = request.alternatives[index - 1].module
                self.console.print(f"[green]✓ Using alternative: {module}[/]")
                return ConsentResponse(approved=False, use_alternative=module, reason=f"substituted with {module}")

        if choice in _ANSWERS:
            return _ANSWERS[choice].model_copy()

        self.console.print(f'[yellow]Invalid input "{escape(choice)}", defaulting to reject[/]')
        return ConsentResponse(approved=False, reason=f"invalid answer {choice!r}")

    async def prompt(self, request: ConsentRequest, non_interactive: bool = False) -> ConsentResponse:
        if non_interactive:
            self.console.print(
                f"[yellow]Running in non-interactive mode, rejecting new dependency: {request.package}[/]"
            )
            return ConsentResponse(approved=False, reason=NON_INTERACTIVE_REASON)
        if self._closed:
            return ConsentResponse(approved=False, reason=CLOSED_REASON)

        self.render(request)
        self._pending = self._read(lambda: Prompt.ask(
            "Your choice \\[y/s/p/n]", console=self.console, stream=self.stream, default="n",
            show_default=False,
        ))
        try:
            answer = await self._pending
        finally:
            self._pending = None

        if answer is None:
            return ConsentResponse(approved=False, reason=CLOSED_REASON)
        return self.parse(answer, request)


def _resolve(future: asyncio.Future, answer: str | None, error: Exception | None = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(answer)
