"""
Architect — turns one task into a file-level plan.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from changegate.agents import AgentContext, BaseAgent
from changegate.agents.planner import Task


class FileOperation(BaseModel):
    path: str
    operation: Literal["create", "modify", "delete"]
    description: str
    interfaces: list[str] | None = None
    dependencies: list[str] | None = None


class ArchitectPlan(BaseModel):
    files: list[FileOperation] = Field(min_length=1)
    reasoning: str


class ArchitectInput(BaseModel):
    task: Task
    project_context: str
    existing_files: list[str] = Field(default_factory=list)


class ArchitectAgent(BaseAgent[ArchitectInput, ArchitectPlan]):
    role = "architect"
    tag = "ARCHITECT"
    output_schema = ArchitectPlan

    system_prompt = """You are a software architect agent. Your job is to create a file-level plan for implementing a task.

RESPOND ONLY WITH JSON matching this schema:
{
  "files": [
    {
      "path": "string — file path relative to project root",
      "operation": "create" | "modify" | "delete",
      "description": "string — what changes will be made",
      "interfaces": ["string — key type/interface names (optional)"],
      "dependencies": ["string — imports needed (optional)"]
    }
  ],
  "reasoning": "string — brief explanation of structural decisions"
}

Rules:
- Keep the file plan minimal. Only include files that need to change.
- Follow existing project conventions and patterns.
- Prefer modifying existing files over creating new ones when appropriate.
- Consider imports and dependencies between files.

Do NOT include markdown fences. Do NOT include explanation text. ONLY valid JSON."""

    def build_messages(self, data: ArchitectInput) -> list[dict[str, str]]:
        user_content = f"""Project context:
{data.project_context}

Task: {data.task.title}
Description: {data.task.description}"""

        existing = data.existing_files or data.task.estimated_files
        if existing:
            user_content += "\n\nRelevant existing files:\n" + "\n".join(existing)

        return [self._system_msg(), self._user_msg(user_content)]

    def on_result(self, result: ArchitectPlan, context: AgentContext) -> None:
        ops = ", ".join(f"{f.operation} {f.path}" for f in result.files)
        context.log.info(f"[ARCHITECT] {len(result.files)} files planned: {ops}")
