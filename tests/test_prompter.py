import asyncio
import threading
from io import StringIO

import pytest
from rich.console import Console

from changegate.consent.prompter import CLOSED_REASON, NON_INTERACTIVE_REASON, ConsentPrompter, ConsentRequest
from changegate.tools.imports import SUBSTITUTION_MAP


def _prompter(answers: str) -> tuple[ConsentPrompter, StringIO]:
    out = StringIO()
    return ConsentPrompter(console=Console(file=out, width=120), stream=StringIO(answers)), out


@pytest.mark.asyncio
@pytest.mark.parametrize("answer, scope", [("y\n", "once"), ("yes\n", "once"), ("s\n", "session"), ("P\n", "project")])
async def test_approval_answers(answer, scope):
    prompter, _ = _prompter(answer)
    response = await prompter.prompt(ConsentRequest(package="zod"))

    assert response.approved
    assert response.scope == scope


@pytest.mark.asyncio
@pytest.mark.parametrize("answer", ["n\n", "no\n", "maybe\n", "\n", ""])
async def test_everything_else_rejects(answer):
    prompter, _ = _prompter(answer)
    response = await prompter.prompt(ConsentRequest(package="zod"))

    assert not response.approved
    assert response.use_alternative is None


@pytest.mark.asyncio
async def test_numbered_answer_picks_alternative():
    prompter, out = _prompter("1\n")
    request = ConsentRequest(package="axios", alternatives=[SUBSTITUTION_MAP["axios"]])

    response = await prompter.prompt(request)

    assert not response.approved
    assert response.use_alternative == "fetch"
    rendered = out.getvalue()
    assert "axios" in rendered
    assert "Built-in alternatives" in rendered
    assert "[1-1] Use alternative instead" in rendered


@pytest.mark.asyncio
async def test_out_of_range_number_rejects():
    prompter, _ = _prompter("2\n")
    request = ConsentRequest(package="axios", alternatives=[SUBSTITUTION_MAP["axios"]])

    response = await prompter.prompt(request)

    assert not response.approved
    assert response.use_alternative is None


@pytest.mark.asyncio
async def test_non_interactive_never_reads():
    stream = StringIO("y\n")
    prompter = ConsentPrompter(console=Console(file=StringIO()), stream=stream)

    response = await prompter.prompt(ConsentRequest(package="zod"), non_interactive=True)

    assert not response.approved
    assert response.reason == NON_INTERACTIVE_REASON
    assert stream.tell() == 0


@pytest.mark.asyncio
async def test_closed_prompter_rejects():
    prompter, _ = _prompter("y\n")
    prompter.close()

    response = await prompter.prompt(ConsentRequest(package="zod"))

    assert prompter.closed
    assert not response.approved


def test_render_shows_context_and_options():
    prompter, out = _prompter("")
    prompter.render(ConsentRequest(package="zod", reason="validation", file_context=["src/a.ts", "src/b.ts"]))

    text = out.getvalue()
    assert "zod" in text
    assert "src/a.ts, src/b.ts" in text
    assert "[y] Approve once" in text
    assert "[p] Approve for project" in text


class _SilentStream:
    """stdin for a user who has not answered yet."""

    def __init__(self):
        self.answered = threading.Event()

    def readline(self) -> str:
        self.answered.wait(5)
        return "y\n"


@pytest.mark.asyncio
async def test_close_releases_an_open_prompt():
    stream = _SilentStream()
    prompter = ConsentPrompter(console=Console(file=StringIO()), stream=stream)

    pending = asyncio.create_task(prompter.prompt(ConsentRequest(package="zod")))
    await asyncio.sleep(0)
    prompter.close()
    response = await asyncio.wait_for(pending, timeout=1)
    stream.answered.set()

    assert not response.approved
    assert response.reason == CLOSED_REASON


@pytest.mark.asyncio
async def test_interrupted_prompt_leaves_only_a_daemon_reader():
    stream = _SilentStream()
    prompter = ConsentPrompter(console=Console(file=StringIO()), stream=stream)

    pending = asyncio.create_task(prompter.prompt(ConsentRequest(package="zod")))
    await asyncio.sleep(0)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    readers = [t for t in threading.enumerate() if t.name == "consent-prompt" and t.is_alive()]
    stream.answered.set()
    assert readers
    assert all(t.daemon for t in readers)
