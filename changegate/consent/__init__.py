"""
Consent gate for new third-party dependencies.

Approvals are checked project store first, then the session set, then
an interactive prompt.
"""

from changegate.consent.manager import BatchApprovalResult, ConsentManager, ConsentOutcome
from changegate.consent.prompter import ConsentPrompter, ConsentRequest, ConsentResponse
from changegate.consent.schema import ConsentDecision, ConsentScope, ProjectConsent
from changegate.consent.storage import ConsentStorage, ConsentStorageError

__all__ = [
    "BatchApprovalResult",
    "ConsentDecision",
    "ConsentManager",
    "ConsentOutcome",
    "ConsentPrompter",
    "ConsentRequest",
    "ConsentResponse",
    "ConsentScope",
    "ConsentStorage",
    "ConsentStorageError",
    "ProjectConsent",
]
