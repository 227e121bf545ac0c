"""
Coder — generates full-file changes from an architect plan.

Each call produces a complete candidate change set. Feedback from
earlier attempts (review issues, rejected imports, agent errors) is
folded into the prompt so the next attempt can correct course.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from changegate.agents import AgentContext, BaseAgent
from changegate.agents.architect import ArchitectPlan
from changegate.agents.planner import Task
from changegate.agents.reviewer import ReviewOutput


class FileChange(BaseModel):
    path: str
    content: str = ""
    diff: str | None = None
    delete: bool = False


class CoderOutput(BaseModel):
    changes: list[FileChange] = Field(min_length=1)


class CoderInput(BaseModel):
    task: Task
    plan: ArchitectPlan
    relevant_files: dict[str, str] = Field(default_factory=dict)
    review_feedback: ReviewOutput | None = None
    import_feedback: str | None = None
    previous_errors: list[str] = Field(default_factory=list)
    dependency_context: str | None = None


class CoderAgent(BaseAgent[CoderInput, CoderOutput]):
    role = "coder"
    tag = "CODER"
    output_schema = CoderOutput

    system_prompt = """You are a software coder agent. Your job is to generate code changes based on an architecture plan.

RESPOND ONLY WITH JSON matching this schema:
{
  "changes": [
    {
      "path": "string — file path relative to project root",
      "content": "string — full file content",
      "delete": false
    }
  ]
}

Rules:
- Generate complete, working code for each file. Always send the full file content.
- Follow the architecture plan exactly. For a planned deletion, send "delete": true and empty content.
- Use proper imports and exports.
- Follow existing code conventions in the project.
- Include appropriate error handling.
- Make sure all types are properly defined.

Do NOT include markdown fences. Do NOT include explanation text. ONLY valid JSON."""

    def build_messages(self, data: CoderInput) -> list[dict[str, str]]:
        user_content = f"""Task: {data.task.title}
Description: {data.task.description}

Architecture Plan:
Reasoning: {data.plan.reasoning}
Files to change:
"""
        for op in data.plan.files:
            user_content += f"- {op.path} ({op.operation}): {op.description}\n"

        if data.relevant_files:
            user_content += "\nExisting file contents:\n"
            for path, content in data.relevant_files.items():
                user_content += f"\n--- {path} ---\n{content}\n"

        if data.review_feedback:
            user_content += "\n\nPREVIOUS REVIEW FEEDBACK (fix these issues):\n"
            user_content += f"Summary: {data.review_feedback.summary}\n"
            for issue in data.review_feedback.issues:
                user_content += f"- [{issue.severity}] {issue.file}: {issue.description}"
                if issue.suggested_fix:
                    user_content += f" (Suggested fix: {issue.suggested_fix})"
                user_content += "\n"

        if data.import_feedback:
            user_content += "\n\nIMPORT VALIDATION FAILURE (you MUST fix these):\n"
            user_content += data.import_feedback
            user_content += "\n\nRewrite the code using ONLY installed packages and Node.js built-in modules.\n"

        if data.previous_errors:
            user_content += "\n\nYour previous attempts failed with:\n"
            user_content += "\n".join(f"- {e}" for e in data.previous_errors)
            user_content += "\n"

        return [self._system_msg(data.dependency_context or ""), self._user_msg(user_content)]

    def on_result(self, result: CoderOutput, context: AgentContext) -> None:
        context.log.info(f"[CODER] {len(result.changes)} file changes generated")
