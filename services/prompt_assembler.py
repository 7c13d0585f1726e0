"""Prompt 组装

按固定 token 上限分配 system / memory / user 三段，每段独立截断，互不借用。
记忆以 "## Relevant Context" 段追加到 system 消息之后，并记录每条记忆的
纳入/排除情况以便审计。
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from config.logging import get_logger
from config.settings import PromptBudgetConfig
from schemas.memory import RetrievalPayload
from services.tokens import chars_for_tokens, estimate_tokens

logger = get_logger(__name__)

MEMORY_HEADER = "## Relevant Context"
USER_TRUNCATION_NOTE = "\n\n[Message truncated due to length]"


@dataclass
class AssembledPrompt:
    messages: List[Dict[str, str]]
    system_tokens: int = 0
    memory_tokens: int = 0
    user_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.system_tokens + self.memory_tokens + self.user_tokens

    @property
    def text(self) -> str:
        """All message contents joined, used for usage estimation."""
        return "\n".join(m["content"] for m in self.messages)


@dataclass
class InclusionReport:
    included_ids: List[str] = field(default_factory=list)
    excluded_ids: List[str] = field(default_factory=list)
    system_truncated: bool = False
    user_truncated: bool = False
    reasons: List[str] = field(default_factory=list)

    def summary(self) -> Dict[str, object]:
        return {
            "items_included": len(self.included_ids),
            "items_excluded": len(self.excluded_ids),
            "system_truncated": self.system_truncated,
            "user_truncated": self.user_truncated,
            "reasons": list(self.reasons),
        }


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut ``text`` to at most ``max_tokens`` estimated tokens.

    Prefers a word boundary when one falls in the last 20% of the allowed span.
    """
    max_chars = chars_for_tokens(max_tokens)
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    last_space = cut.rfind(" ")
    if last_space > max_chars * 0.8:
        return cut[:last_space]
    return cut


class PromptAssembler:
    """Builds the chat messages sent to the LLM provider."""

    def __init__(self, budgets: Optional[PromptBudgetConfig] = None):
        self.budgets = budgets or PromptBudgetConfig()

    def assemble(
        self,
        system_text: str,
        memory_payload: Optional[RetrievalPayload],
        user_message: str,
        budgets: Optional[PromptBudgetConfig] = None,
    ) -> tuple[AssembledPrompt, InclusionReport]:
        budgets = budgets or self.budgets
        report = InclusionReport()

        # 1. system
        system = system_text
        if estimate_tokens(system) > budgets.system:
            system = truncate_to_tokens(system, budgets.system)
            report.system_truncated = True
            report.reasons.append("System prompt truncated to fit budget")

        system_tokens = estimate_tokens(system)

        # 2. memory
        memory_block, memory_tokens = self._memory_block(memory_payload, budgets.memory, report)
        if memory_block:
            system = f"{system}\n\n{memory_block}" if system else memory_block

        # 3. user
        user = user_message
        if estimate_tokens(user) > budgets.user:
            room = budgets.user - estimate_tokens(USER_TRUNCATION_NOTE)
            if room > 0:
                user = truncate_to_tokens(user, room) + USER_TRUNCATION_NOTE
            else:
                # 上限容不下提示语时只截断
                user = truncate_to_tokens(user, budgets.user)
            report.user_truncated = True
            report.reasons.append("User message truncated to fit budget")

        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})

        prompt = AssembledPrompt(
            messages=messages,
            system_tokens=system_tokens,
            memory_tokens=memory_tokens,
            user_tokens=estimate_tokens(user),
        )
        logger.debug(
            f"[PROMPT] Assembled: system={prompt.system_tokens} memory={prompt.memory_tokens} "
            f"user={prompt.user_tokens} included={len(report.included_ids)} "
            f"excluded={len(report.excluded_ids)}"
        )
        return prompt, report

    @staticmethod
    def _memory_block(
        payload: Optional[RetrievalPayload],
        budget: int,
        report: InclusionReport,
    ) -> tuple[str, int]:
        """Render memory lines under the header, stopping at the first entry that does not fit.

        The header and line prefixes count against the memory budget.
        """
        if payload is None or not payload.memories:
            return "", 0

        lines = [MEMORY_HEADER]
        used = estimate_tokens(MEMORY_HEADER)
        remaining_entries = list(payload.memories)

        while remaining_entries:
            entry = remaining_entries[0]
            candidate = "\n".join(lines + [f"- {entry.content}"])
            if estimate_tokens(candidate) > budget:
                break
            lines.append(f"- {entry.content}")
            used = estimate_tokens(candidate)
            report.included_ids.append(entry.id)
            remaining_entries.pop(0)

        if remaining_entries:
            report.excluded_ids.extend(e.id for e in remaining_entries)
            report.reasons.append(
                f"{len(remaining_entries)} memory items excluded by memory budget ({budget} tokens)"
            )

        if not report.included_ids:
            return "", 0
        return "\n".join(lines), used
