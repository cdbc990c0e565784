"""
Vacation Chat Model - external conversational capability
Multi-turn chat over the session history carried by the caller
"""

import time
from typing import List, Optional

import ollama

from ..ap2_types import ConversationTurn, VacationPackage
from ..config import LLM_ENABLED, OLLAMA_HOST, OLLAMA_MODEL, OLLAMA_TIMEOUT
from ..utils import get_logger, log_llm_call
from .catalog import VACATION_PACKAGES

logger = get_logger("VacationChat")

# Ollama role names for each turn type
_ROLES = {"system": "system", "human": "user", "ai": "assistant"}


def build_system_prompt(catalog: List[VacationPackage]) -> str:
    listing = "\n".join(
        f"- {pkg.name}: {pkg.destination} ({pkg.region}, {', '.join(pkg.activities)}) - ${pkg.price:.0f}"
        for pkg in catalog
    )
    return f"""You are an AI vacation booking assistant using the Agent Payments Protocol (AP2).

Your role:
- Help users find their perfect vacation through conversation
- Ask clarifying questions about budget, destination type, activities and dates
- Describe our available packages in a helpful, conversational way
- Guide them through the AP2 payment flow

IMPORTANT: You can ONLY recommend destinations that exist in our catalog.

Available packages:
{listing}

The Merchant Agent will select and present 1-3 matching packages based on the conversation.

Be friendly, helpful, and concise. Always prioritize user control and transparency."""


class VacationChatModel:
    """
    Conversational reply generation.

    Holds no history of its own: every call receives the full session
    history and returns the turns to append.
    """

    def __init__(
        self,
        model: str = OLLAMA_MODEL,
        client: Optional[ollama.AsyncClient] = None,
        catalog: Optional[List[VacationPackage]] = None,
    ):
        self.model = model
        self.client = client or ollama.AsyncClient(host=OLLAMA_HOST, timeout=OLLAMA_TIMEOUT)
        self.catalog = catalog if catalog is not None else VACATION_PACKAGES

    def start_history(self) -> List[ConversationTurn]:
        return [ConversationTurn(type="system", content=build_system_prompt(self.catalog))]

    async def reply(self, history: List[ConversationTurn]) -> str:
        """Reply to the last human turn in ``history``."""
        if not LLM_ENABLED:
            return self._fallback_reply(history)

        try:
            start_time = time.time()
            response = await self.client.chat(
                model=self.model,
                messages=[{"role": _ROLES[turn.type], "content": turn.content} for turn in history],
                options={"temperature": 0.7},
            )
            content = response["message"]["content"].strip()
            log_llm_call(logger, self.model, history[-1].content, content, time.time() - start_time)
            if content:
                return content
        except Exception as e:
            logger.warning(f"Chat model unavailable, using canned reply: {e}")

        return self._fallback_reply(history)

    @staticmethod
    def _fallback_reply(history: List[ConversationTurn]) -> str:
        last = history[-1].content if history else ""
        return (
            f"Great, let me look for vacations matching \"{last}\". "
            "Our merchant partner will send over a few signed package offers."
        )
