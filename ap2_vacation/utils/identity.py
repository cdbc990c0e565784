"""
Agent identity checks for A2A peers

Each agent is handed the credential it presents and the verifier it trusts
at construction time, so a deployment can rotate identities without code
changes. The allow-list verifier is the demo backend; a verifiable-credential
check would slot in behind the same ``verify`` call.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from ..config import TRUSTED_SHOPPING_AGENT_ID
from ..errors import UnauthorizedError

CALLER_IDENTITY_KEY = "shopping_agent_id"


@dataclass(frozen=True)
class AgentCredential:
    """Identity an agent presents in the caller-identity data part."""

    agent_id: str


class IdentityVerifier:
    def verify(self, presented: Optional[str]) -> AgentCredential:
        raise NotImplementedError


class AllowListVerifier(IdentityVerifier):
    """Accepts only callers whose presented id is on the list."""

    def __init__(self, trusted_ids: Iterable[str]):
        self.trusted_ids = frozenset(trusted_ids)

    def verify(self, presented: Optional[str]) -> AgentCredential:
        if not isinstance(presented, str) or presented not in self.trusted_ids:
            raise UnauthorizedError(
                "Unauthorized shopping agent",
                details={"presented": presented if isinstance(presented, str) else None},
            )
        return AgentCredential(agent_id=presented)


def default_shopping_credential() -> AgentCredential:
    return AgentCredential(agent_id=TRUSTED_SHOPPING_AGENT_ID)


def default_verifier() -> AllowListVerifier:
    return AllowListVerifier([TRUSTED_SHOPPING_AGENT_ID])
