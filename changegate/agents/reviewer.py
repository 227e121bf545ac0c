"""
Reviewer — checks generated code against the original request.

Looks for broken logic, missing requirements, and imports that
are neither installed nor built in. Its `passed` verdict is trusted
as reported.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from changegate.agents import AgentContext, BaseAgent
from changegate.agents.planner import Task


class ReviewIssue(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    severity: Literal["error", "warning", "suggestion"]
    file: str
    description: str
    suggested_fix: str | None = Field(default=None, alias="suggestedFix")


class ReviewOutput(BaseModel):
    passed: bool
    issues: list[ReviewIssue] = Field(default_factory=list)
    summary: str


class ReviewerInput(BaseModel):
    original_request: str
    task: Task
    changes: dict[str, str]  # path → content
    known_dependencies: list[str] = Field(default_factory=list)


class ReviewerAgent(BaseAgent[ReviewerInput, ReviewOutput]):
    role = "reviewer"
    tag = "REVIEWER"
    output_schema = ReviewOutput

    system_prompt = """You are a code reviewer agent. Your job is to review generated code against the original requirements.

RESPOND ONLY WITH JSON matching this schema:
{
  "passed": boolean,
  "issues": [
    {
      "severity": "error" | "warning" | "suggestion",
      "file": "string — file path",
      "description": "string — what the issue is",
      "suggestedFix": "string — how to fix it (optional)"
    }
  ],
  "summary": "string — overall review summary"
}

Severity levels:
- error: Must be fixed. Code is broken, incorrect, or doesn't meet requirements.
- warning: Should be fixed. Potential bugs or missing edge cases.
- suggestion: Nice to have.

Rules:
- Set passed=true ONLY if there are no errors.
- Check that the code correctly implements the requirements.
- Verify imports exist: only the listed dependencies and built-in modules are available.
- Check for obvious bugs or runtime errors.
- Be specific about what's wrong and how to fix it.

Do NOT include markdown fences. Do NOT include explanation text. ONLY valid JSON."""

    def build_messages(self, data: ReviewerInput) -> list[dict[str, str]]:
        user_content = f"""Original Request: {data.original_request}

Task: {data.task.title}
Description: {data.task.description}

Code to review:
"""
        for path, content in data.changes.items():
            user_content += f"\n--- {path} ---\n{content}\n"

        if data.known_dependencies:
            user_content += f"\nAvailable dependencies: {', '.join(data.known_dependencies)}"

        return [self._system_msg(), self._user_msg(user_content)]

    def on_result(self, result: ReviewOutput, context: AgentContext) -> None:
        verdict = "passed" if result.passed else "failed"
        context.log.info(f"[REVIEWER] Verdict: {verdict} — {len(result.issues)} issues found")
