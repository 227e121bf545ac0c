"""
Planner — decomposes a request into ordered tasks.

Never writes code. Only plans.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from changegate.agents import AgentContext, BaseAgent


# ---------------------------------------------------------------------------
# Strict Output Schemas
# ---------------------------------------------------------------------------

class Task(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    description: str
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    estimated_files: list[str] = Field(default_factory=list, alias="estimatedFiles")


class PlannerInput(BaseModel):
    request: str
    project_context: str


class PlannerOutput(BaseModel):
    tasks: list[Task] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class PlannerAgent(BaseAgent[PlannerInput, PlannerOutput]):
    role = "planner"
    tag = "PLANNER"
    output_schema = PlannerOutput

    system_prompt = """You are a software planning agent. Your job is to decompose a development request into ordered tasks.

RESPOND ONLY WITH JSON matching this schema:
{
  "tasks": [
    {
      "id": "string — unique task identifier (e.g., task-1, task-2)",
      "title": "string — short description (1-2 sentences)",
      "description": "string — detailed requirements",
      "dependsOn": ["string — IDs of tasks that must complete first"],
      "estimatedFiles": ["string — file paths this task will likely touch"]
    }
  ]
}

Rules:
- Break the request into small, focused tasks.
- Each task should be completable independently, given its dependencies.
- Order tasks by dependency. A task's dependsOn may only reference earlier task IDs.
- Be specific about what each task should accomplish.
- Estimate which files will be created or modified.

Do NOT include markdown fences. Do NOT include explanation text. ONLY valid JSON."""

    def build_messages(self, data: PlannerInput) -> list[dict[str, str]]:
        user_content = f"""Project context:
{data.project_context}

Request:
{data.request}"""
        return [self._system_msg(), self._user_msg(user_content)]

    def on_result(self, result: PlannerOutput, context: AgentContext) -> None:
        context.log.info(f"[PLANNER] Plan ready — {len(result.tasks)} tasks")
