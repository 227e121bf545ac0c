"""
Consent manager — decides whether a new package may be installed.

Lookup order per package:
  1. Project store (durable, cumulative across runs)
  2. Session set (in memory, this run only)
  3. Prompt (rejects without asking in non-interactive mode)

The store is a best-effort cache over the session set: if it cannot be
read the check falls through, and if a project approval cannot be
written it is kept at session scope instead.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import BaseModel, Field

from changegate.consent.prompter import ConsentPrompter, ConsentRequest, ConsentResponse
from changegate.consent.schema import ConsentDecision, ConsentScope
from changegate.consent.storage import DEFAULT_FILENAME, MAX_DECISIONS, ConsentStorage, ConsentStorageError
from changegate.tools.imports import AlternativeInfo

ApprovalSource = Literal["project", "session", "prompt"]


class ConsentOutcome(BaseModel):
    approved: bool
    scope: ConsentScope | None = None
    source: ApprovalSource = "prompt"
    use_alternative: str | None = None
    reason: str | None = None


class BatchApprovalResult(BaseModel):
    approved: list[str] = Field(default_factory=list)
    alternatives: dict[str, str] = Field(default_factory=dict)  # package → substitute module
    rejected: list[str] = Field(default_factory=list)
    reasons: dict[str, str] = Field(default_factory=dict)  # rejected package → why


class ConsentManager:
    def __init__(
        self,
        project_root: Path,
        prompter: ConsentPrompter | None = None,
        storage: ConsentStorage | None = None,
        non_interactive: bool = False,
        filename: str = DEFAULT_FILENAME,
        max_decisions: int = MAX_DECISIONS,
        log=None,
    ):
        self.storage = storage or ConsentStorage(project_root, filename, max_decisions)
        self.prompter = prompter or ConsentPrompter(store_label=self.storage.path.name)
        self.non_interactive = non_interactive
        self.session: set[str] = set()
        self.log = log or logger.bind(scope="consent")

    def set_non_interactive(self, value: bool) -> None:
        self.non_interactive = value

    def cleanup(self) -> None:
        """Close the prompter and forget session approvals."""
        self.prompter.close()
        self.session.clear()

    # ------------------------------------------------------------------

    def _project_approved(self, package: str) -> bool:
        try:
            return self.storage.is_approved(package)
        except ConsentStorageError as e:
            self.log.warning(f"[CONSENT] Project approvals unavailable, using session only: {e}")
            return False

    def _record(self, package: str, response: ConsentResponse, reason: str | None) -> ConsentScope:
        scope = response.scope
        if scope == "session":
            self.session.add(package)
        elif scope == "project":
            try:
                self.storage.add_decision(ConsentDecision(package=package, scope=scope, reason=reason))
            except ConsentStorageError as e:
                self.log.warning(f"[CONSENT] Could not persist approval of {package}, keeping it for this session: {e}")
                self.session.add(package)
                scope = "session"
        return scope

    async def check_approval(
        self,
        package: str,
        reason: str | None = None,
        file_context: list[str] | None = None,
        alternatives: list[AlternativeInfo] | None = None,
    ) -> ConsentOutcome:
        if self._project_approved(package):
            self.log.info(f"[CONSENT] ✓ {package} (project-approved)")
            return ConsentOutcome(approved=True, scope="project", source="project")

        if package in self.session:
            self.log.info(f"[CONSENT] ✓ {package} (session-approved)")
            return ConsentOutcome(approved=True, scope="session", source="session")

        request = ConsentRequest(
            package=package,
            reason=reason,
            file_context=file_context or [],
            alternatives=alternatives or [],
        )
        response = await self.prompter.prompt(request, non_interactive=self.non_interactive)

        if response.use_alternative:
            self.log.info(f"[CONSENT] → substitute {package} with {response.use_alternative}")
            return ConsentOutcome(approved=False, use_alternative=response.use_alternative, reason=response.reason)

        if not response.approved:
            self.log.info(f"[CONSENT] ✗ {package} rejected ({response.reason or 'no reason'})")
            return ConsentOutcome(approved=False, reason=response.reason)

        scope = self._record(package, response, reason)
        self.log.info(f"[CONSENT] ✓ {package} approved ({scope})")
        return ConsentOutcome(approved=True, scope=scope, source="prompt")

    async def check_batch_approval(
        self,
        packages: list[str],
        reason: str | None = None,
        file_context: dict[str, list[str]] | None = None,
    ) -> list[str]:
        """Approved packages, in order, up to the first rejection."""
        result = await self.check_batch_approval_with_alternatives(packages, file_context=file_context, reason=reason)
        return result.approved

    async def check_batch_approval_with_alternatives(
        self,
        packages: list[str],
        alternatives: dict[str, AlternativeInfo] | None = None,
        file_context: dict[str, list[str]] | None = None,
        reason: str | None = None,
    ) -> BatchApprovalResult:
        """
        Ask about each package in order and stop at the first rejection.

        Packages after the rejected one are never prompted and are put in
        `rejected` as well. A substitution is not a rejection: the loop
        continues.
        """
        alternatives = alternatives or {}
        file_context = file_context or {}
        result = BatchApprovalResult()

        for i, package in enumerate(packages):
            alt = alternatives.get(package)
            outcome = await self.check_approval(
                package,
                reason=reason,
                file_context=file_context.get(package),
                alternatives=[alt] if alt else None,
            )

            if outcome.approved:
                result.approved.append(package)
                continue

            if outcome.use_alternative:
                result.alternatives[package] = outcome.use_alternative
                continue

            result.rejected.append(package)
            result.reasons[package] = outcome.reason or "rejected"
            remaining = packages[i + 1:]
            for skipped in remaining:
                result.rejected.append(skipped)
                result.reasons[skipped] = f"not asked: batch stopped at rejection of {package}"
            if remaining:
                self.log.info(f"[CONSENT] Stopping batch approval; skipped {', '.join(remaining)}")
            break

        return result
