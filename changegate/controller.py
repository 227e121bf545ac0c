"""
changegate Controller — The Pipeline

It is NOT smart. It is deterministic.

Pipeline: Plan → (per task) Architect → Generate → Validate Imports →
(Consent + Install) → Review → Passed | Retry | Failed

Responsibilities:
  - Gather project context once per run
  - Sequence the agents (the only component allowed to)
  - Drive the per-task state machine with an entry guard per phase
  - Gate new dependencies through consent and a transactional install
  - Report every task, passed or not, with its last changes and issues

It never writes project files. It only coordinates; staging and
applying are the caller's decision.
"""

from __future__ import annotations

import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field

from changegate.agents import AgentContext, AgentError
from changegate.agents.architect import ArchitectAgent, ArchitectInput, ArchitectPlan
from changegate.agents.coder import CoderAgent, CoderInput, FileChange
from changegate.agents.planner import PlannerAgent, PlannerInput, Task
from changegate.agents.reviewer import ReviewerAgent, ReviewerInput, ReviewIssue, ReviewOutput
from changegate.config_loader import ChangegateConfig, LimitsConfig, load_config
from changegate.consent.manager import ConsentManager
from changegate.event_bus import EventBus
from changegate.router import Router
from changegate.tools.backup import format_install_failure_feedback
from changegate.tools.context import (
    ProjectContext,
    build_dependency_context,
    format_project_context,
    gather_project_context,
)
from changegate.tools.imports import ImportValidationResult, ImportValidator
from changegate.tools.installer import DependencyInstaller, InstallError
from changegate.tools.package_manager import DetectionError
from changegate.tools.toolkit import PROTECTED_PATHS, ToolError, ToolKit


class PlanningError(Exception):
    """The planner produced no usable task list; the run cannot proceed."""


# ---------------------------------------------------------------------------
# Task State: per-task working memory
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    GENERATING = "generating"
    VALIDATING_IMPORTS = "validating_imports"
    INSTALLING_DEPENDENCIES = "installing_dependencies"
    REVIEWING = "reviewing"
    RETRYING = "retrying"
    PASSED = "passed"
    FAILED = "failed"


TERMINAL = (Phase.PASSED, Phase.FAILED)


def phase_limits(limits: LimitsConfig) -> dict[Phase, int]:
    """
    Maximum number of entries into each non-terminal phase for one task.

    Every review cycle may take up to max_import_retries + 1 generations
    before its imports are clean, and generation errors add at most
    max_generation_retries more.
    """
    cycles = limits.max_review_retries + 1
    per_cycle = limits.max_import_retries + 1
    return {
        Phase.GENERATING: cycles * per_cycle + limits.max_generation_retries,
        Phase.VALIDATING_IMPORTS: cycles * per_cycle,
        Phase.INSTALLING_DEPENDENCIES: cycles * per_cycle,
        Phase.REVIEWING: cycles,
        Phase.RETRYING: limits.max_review_retries,
    }


class TaskRun(BaseModel):
    """
    Structured working memory for one task.

    The Controller owns it; handlers read what they need and write
    their contribution before naming the next phase.
    """

    task: Task
    plan: ArchitectPlan
    relevant_files: dict[str, str] = Field(default_factory=dict)
    phase: Phase = Phase.GENERATING

    # Latest candidate (superseded by each generation)
    changes: list[FileChange] = Field(default_factory=list)
    attempts: int = 0

    # Feedback carried into the next generation
    review_feedback: ReviewOutput | None = None
    import_feedback: str | None = None
    generation_errors: list[str] = Field(default_factory=list)

    # Dependency gate
    pending_packages: list[str] = Field(default_factory=list)
    importers: dict[str, list[str]] = Field(default_factory=dict)
    installed_packages: list[str] = Field(default_factory=list)
    accepted_packages: list[str] = Field(default_factory=list)

    # Review
    review: ReviewOutput | None = None
    review_errors: list[str] = Field(default_factory=list)

    # Retry counters
    review_retries: int = 0
    import_retries: int = 0
    generation_retries: int = 0

    # Tracking
    entries: dict[Phase, int] = Field(default_factory=dict)
    history: list[Phase] = Field(default_factory=list)
    failure_reason: str | None = None

    def fail(self, reason: str) -> Phase:
        self.failure_reason = reason
        return Phase.FAILED


class TaskResult(BaseModel):
    task: Task
    status: Literal["passed", "failed"]
    changes: list[FileChange] = Field(default_factory=list)
    review_passed: bool = False
    review_issues: list[ReviewIssue] = Field(default_factory=list)
    review_summary: str | None = None
    installed_packages: list[str] = Field(default_factory=list)
    accepted_packages: list[str] = Field(default_factory=list)
    review_errors: list[str] = Field(default_factory=list)
    failure_reason: str | None = None
    attempts: int = 0
    phases: list[Phase] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: TaskRun) -> "TaskResult":
        review = run.review
        return cls(
            task=run.task,
            status="passed" if run.phase == Phase.PASSED else "failed",
            changes=run.changes,
            review_passed=bool(review and review.passed and run.phase == Phase.PASSED),
            review_issues=review.issues if review else [],
            review_summary=review.summary if review else None,
            installed_packages=run.installed_packages,
            accepted_packages=run.accepted_packages,
            review_errors=run.review_errors,
            failure_reason=run.failure_reason,
            attempts=run.attempts,
            phases=run.history,
        )


class PipelineResult(BaseModel):
    success: bool
    results: list[TaskResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    conversation_id: str = ""


class PlanPreview(BaseModel):
    tasks: list[Task]
    plans: dict[str, ArchitectPlan] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)


def format_import_feedback(
    rejected: list[str],
    substitutions: dict[str, str],
    suggestions: list[str],
    reasons: dict[str, str] | None = None,
) -> str:
    """Feedback for the coder naming packages it must not import."""
    reasons = reasons or {}
    lines: list[str] = []
    not_allowed = [p for p in rejected if p not in substitutions]
    if not_allowed:
        lines.append(
            f"The following packages are NOT installed and MUST NOT be imported: {', '.join(not_allowed)}"
        )
        for pkg in not_allowed:
            if pkg in reasons:
                lines.append(f"- {pkg}: {reasons[pkg]}")
    if substitutions:
        lines.append("")
        lines.append("Replace these packages with the chosen built-in alternatives:")
        lines += [f"- {pkg} → {module}" for pkg, module in substitutions.items()]

    relevant = [s for s in suggestions if s.split(":", 1)[0] in rejected]
    if relevant:
        lines.append("")
        lines.append("Suggested alternatives:")
        lines += [f"- {s}" for s in relevant]
    return "\n".join(lines).strip()


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

Handler = Callable[[TaskRun], Awaitable[Phase]]


class Controller:
    """
    The changegate pipeline.

    Collaborators default to the real implementations and can be
    replaced (tests substitute agents, consent and installer).
    """

    def __init__(
        self,
        project_root: Path,
        config: ChangegateConfig | None = None,
        router: Router | None = None,
        toolkit: ToolKit | None = None,
        consent: ConsentManager | None = None,
        installer: DependencyInstaller | None = None,
        planner: PlannerAgent | None = None,
        architect: ArchitectAgent | None = None,
        coder: CoderAgent | None = None,
        reviewer: ReviewerAgent | None = None,
        bus: EventBus | None = None,
        log: Any = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.config = config or load_config(self.project_root)
        self.log = log or logger.bind(scope="pipeline")
        self.bus = bus or EventBus()

        # Core components
        self.router = router or Router(self.config)
        self.toolkit = toolkit or ToolKit(
            self.project_root, protected=PROTECTED_PATHS | {self.config.consent.filename}
        )
        self.consent = consent or ConsentManager(
            self.project_root,
            non_interactive=self.config.consent.non_interactive,
            filename=self.config.consent.filename,
            max_decisions=self.config.consent.max_decisions,
        )
        self.installer = installer or DependencyInstaller(self.project_root)

        # Agents
        self.planner = planner or PlannerAgent()
        self.architect = architect or ArchitectAgent()
        self.coder = coder or CoderAgent()
        self.reviewer = reviewer or ReviewerAgent()

        self.limits = phase_limits(self.config.limits)
        self._handlers: dict[Phase, Handler] = {
            Phase.GENERATING: self._generate,
            Phase.VALIDATING_IMPORTS: self._validate_imports,
            Phase.INSTALLING_DEPENDENCIES: self._install,
            Phase.REVIEWING: self._review,
            Phase.RETRYING: self._retry,
        }

        # Run state (reset per run)
        self._request = ""
        self._conversation_id = ""
        self._project: ProjectContext = ProjectContext()
        self._project_summary = ""
        self._validator: ImportValidator | None = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, request: str) -> PipelineResult:
        """Execute the full pipeline for a request.

        Raises:
            PlanningError: if the planner fails. Every other failure is
                reported per task.
        """
        tasks = await self._start(request)

        results: list[TaskResult] = []
        errors: list[str] = []
        failed_ids: set[str] = set()

        for task in tasks:
            blocked = [d for d in task.depends_on if d in failed_ids]
            if blocked:
                self.log.warning(f"[PIPELINE] {task.id} depends on failed task(s) {', '.join(blocked)}; running anyway")

            self._emit("task_started", task.id, {"title": task.title})
            result = await self._run_task(task)
            if result.failure_reason:
                errors.append(f"Task {task.id} failed: {result.failure_reason}")
            if result.status != "passed":
                failed_ids.add(task.id)

            results.append(result)
            self._emit("task_finished", task.id, {
                "status": result.status,
                "attempts": result.attempts,
                "failure_reason": result.failure_reason,
            })

        success = bool(results) and all(r.status == "passed" for r in results)
        self.log.info(f"[PIPELINE] Complete — success={success}, {len(results)} tasks, {len(errors)} errors")
        return PipelineResult(
            success=success, results=results, errors=errors, conversation_id=self._conversation_id,
        )

    async def plan(self, request: str) -> PlanPreview:
        """Dry run: planner plus architect for every task, no code generated."""
        tasks = await self._start(request)
        preview = PlanPreview(tasks=tasks)
        for task in tasks:
            try:
                preview.plans[task.id] = await self._architect(task)
            except AgentError as e:
                preview.errors[task.id] = e.message
        return preview

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _agent_context(self, role: str) -> AgentContext:
        return AgentContext(
            router=self.router,
            log=logger.bind(scope=role, conversation=self._conversation_id),
            conversation_id=self._conversation_id,
        )

    def _emit(self, event_type: str, task_id: str | None = None, payload: dict | None = None) -> None:
        self.bus.emit(event_type, task_id, payload or {})

    async def _start(self, request: str) -> list[Task]:
        self._request = request
        self._conversation_id = uuid.uuid4().hex[:12]
        self.log.info(f"[PIPELINE] Starting run {self._conversation_id}")

        self._project = gather_project_context(self.toolkit, self.config.context)
        self._project_summary = format_project_context(self._project)
        self._validator = (
            ImportValidator(self._project.dependencies, self._project.dev_dependencies)
            if self.config.pipeline.enable_import_validation
            else None
        )

        try:
            output = await self.planner.run(
                PlannerInput(request=request, project_context=self._project_summary),
                self._agent_context("planner"),
            )
        except AgentError as e:
            raise PlanningError(f"Planning failed: {e.message}") from e

        self.log.info(f"[PIPELINE] Planning complete — {len(output.tasks)} tasks")
        self._emit("planned", None, {"tasks": [t.id for t in output.tasks]})
        return list(output.tasks)

    async def _architect(self, task: Task) -> ArchitectPlan:
        return await self.architect.run(
            ArchitectInput(task=task, project_context=self._project_summary, existing_files=task.estimated_files),
            self._agent_context("architect"),
        )

    def _relevant_files(self, plan: ArchitectPlan) -> dict[str, str]:
        files: dict[str, str] = {}
        for op in plan.files:
            if op.operation != "modify":
                continue
            try:
                content = self.toolkit.read_file(op.path)
            except ToolError:
                continue
            if len(content) <= self.config.context.max_file_size:
                files[op.path] = content
        return files

    # ------------------------------------------------------------------
    # Per-task state machine
    # ------------------------------------------------------------------

    async def _run_task(self, task: Task) -> TaskResult:
        try:
            plan = await self._architect(task)
        except AgentError as e:
            self.log.error(f"[PIPELINE] Architect failed for {task.id}: {e.message}")
            return TaskResult(task=task, status="failed", failure_reason=f"Architect failed: {e.message}")

        run = TaskRun(task=task, plan=plan, relevant_files=self._relevant_files(plan))

        while run.phase not in TERMINAL:
            phase = run.phase
            limit = self.limits[phase]
            if run.entries.get(phase, 0) >= limit:
                run.phase = run.fail(f"Phase {phase.value} exceeded its limit of {limit} entries")
                break

            run.entries[phase] = run.entries.get(phase, 0) + 1
            run.history.append(phase)
            self._emit("phase_changed", task.id, {"phase": phase.value, "entry": run.entries[phase]})
            run.phase = await self._handlers[phase](run)

        run.history.append(run.phase)
        status = "✓ passed" if run.phase == Phase.PASSED else f"✗ failed ({run.failure_reason})"
        self.log.info(f"[PIPELINE] {task.id} {status} after {run.attempts} generation(s)")
        return TaskResult.from_run(run)

    def _known_dependencies(self, run: TaskRun) -> list[str]:
        known = list(self._validator.allowed) if self._validator else self._project.installed
        return sorted(set(known) | set(run.installed_packages) | set(run.accepted_packages))

    async def _generate(self, run: TaskRun) -> Phase:
        extra = run.installed_packages + run.accepted_packages
        data = CoderInput(
            task=run.task,
            plan=run.plan,
            relevant_files=run.relevant_files,
            review_feedback=run.review_feedback,
            import_feedback=run.import_feedback,
            previous_errors=list(run.generation_errors),
            dependency_context=build_dependency_context(self._project, extra) or None,
        )
        try:
            output = await self.coder.run(data, self._agent_context("coder"))
        except AgentError as e:
            run.generation_errors.append(f"{e.kind}: {e.message}")
            if not e.retryable:
                return run.fail(f"Code generation failed ({e.kind}): {e.message}")
            run.generation_retries += 1
            if run.generation_retries > self.config.limits.max_generation_retries:
                return run.fail(
                    f"Code generation failed after {run.generation_retries} attempts: {e.message}"
                )
            self.log.warning(f"[PIPELINE] {run.task.id} generation error, retrying: {e.message}")
            return Phase.GENERATING

        run.changes = output.changes
        run.attempts += 1
        run.generation_errors.clear()
        return Phase.VALIDATING_IMPORTS

    def _import_retry(self, run: TaskRun, feedback: str, packages: list[str]) -> Phase:
        run.import_retries += 1
        run.pending_packages = []
        self._emit("import_retry", run.task.id, {"packages": packages, "attempt": run.import_retries})
        if run.import_retries > self.config.limits.max_import_retries:
            return run.fail(
                f"Imports still unresolved after {run.import_retries} attempts: {', '.join(packages)}"
            )
        self.log.info(f"[PIPELINE] {run.task.id} import retry {run.import_retries}: {', '.join(packages)}")
        run.import_feedback = feedback
        return Phase.GENERATING

    def _imports_clean(self, run: TaskRun) -> Phase:
        run.import_retries = 0
        run.import_feedback = None
        return Phase.REVIEWING

    async def _validate_imports(self, run: TaskRun) -> Phase:
        if self._validator is None:
            return Phase.REVIEWING

        extra = run.installed_packages + run.accepted_packages
        result: ImportValidationResult = self._validator.validate_changes(run.changes, extra)
        if result.valid:
            return self._imports_clean(run)

        self.log.info(f"[PIPELINE] {run.task.id} imports not installed: {', '.join(result.missing_packages)}")
        gated = await self._validator.gate(result, self.consent)

        if gated.valid:
            run.pending_packages = list(gated.approved_packages or [])
            run.importers = result.importers
            if self.config.pipeline.auto_install:
                return Phase.INSTALLING_DEPENDENCIES
            run.accepted_packages += [p for p in run.pending_packages if p not in run.accepted_packages]
            run.pending_packages = []
            self.log.info(f"[PIPELINE] {run.task.id} accepted without install: {', '.join(run.accepted_packages)}")
            return self._imports_clean(run)

        rejected = list(gated.rejected_packages or [])
        feedback = format_import_feedback(
            rejected, gated.substitutions or {}, result.suggested_fixes, gated.rejection_reasons,
        )
        return self._import_retry(run, feedback, rejected)

    async def _install(self, run: TaskRun) -> Phase:
        packages = list(run.pending_packages)
        try:
            installed = await self.installer.install(packages, run.importers)
        except InstallError as e:
            pm = e.package_manager or self.installer.last_package_manager or "npm"
            self.log.warning(f"[PIPELINE] {run.task.id} install failed ({e.kind}): {e.message}")
            self._emit("install_failed", run.task.id, {"packages": packages, "kind": e.kind})
            return self._import_retry(run, format_install_failure_feedback(packages, e, pm), packages)
        except DetectionError as e:
            self.log.warning(f"[PIPELINE] {run.task.id} cannot install: {e.message}")
            self._emit("install_failed", run.task.id, {"packages": packages, "kind": e.kind})
            feedback = (
                f"{e.message}\nPackages: {', '.join(packages)}\n\n"
                "Action: Rewrite code without these packages or use built-in alternatives."
            )
            return self._import_retry(run, feedback, packages)

        run.pending_packages = []
        run.installed_packages += [p for p in installed if p not in run.installed_packages]
        if self._validator:
            self._validator.allow(installed)
        return self._imports_clean(run)

    async def _review(self, run: TaskRun) -> Phase:
        data = ReviewerInput(
            original_request=self._request,
            task=run.task,
            changes={c.path: c.content for c in run.changes if not c.delete},
            known_dependencies=self._known_dependencies(run),
        )
        max_retries = self.config.limits.max_review_retries
        try:
            review = await self.reviewer.run(data, self._agent_context("reviewer"))
        except AgentError as e:
            run.review_errors.append(f"{e.kind}: {e.message}")
            if not e.retryable:
                return run.fail(f"Review failed ({e.kind}): {e.message}")
            run.review_retries += 1
            if run.review_retries > max_retries:
                return run.fail(f"Review could not complete after {run.review_retries} attempts: {e.message}")
            self.log.warning(f"[PIPELINE] {run.task.id} review error, retrying: {e.message}")
            return Phase.REVIEWING

        run.review = review
        if review.passed:
            return Phase.PASSED

        run.review_retries += 1
        if run.review_retries > max_retries:
            return run.fail(f"Review did not pass after {max_retries + 1} reviews: {review.summary}")
        run.review_feedback = review
        return Phase.RETRYING

    async def _retry(self, run: TaskRun) -> Phase:
        issues = run.review.issues if run.review else []
        self._emit("review_failed", run.task.id, {
            "retry": run.review_retries,
            "issues": [i.model_dump() for i in issues],
        })
        self.log.info(
            f"[PIPELINE] {run.task.id} review retry {run.review_retries}/{self.config.limits.max_review_retries}"
        )
        return Phase.GENERATING
