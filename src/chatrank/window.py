"""Priority-ordered reads of a conversation for prompt assembly."""

import logging
from typing import TYPE_CHECKING, Optional

from .models import Message, Tier

if TYPE_CHECKING:
    from .config import Config
    from .store import ConversationStore, ProjectSnapshot

logger = logging.getLogger(__name__)

# Rough estimate: ~4 characters per token
CHARS_PER_TOKEN = 4


def ordered_messages(snapshot: "ProjectSnapshot") -> list[Message]:
    """Messages of a snapshot in published priority order."""
    return [snapshot.messages[message_id] for message_id in snapshot.ordering]


def estimate_tokens(messages: list[Message]) -> int:
    """Estimate token count for a list of messages (chars / 4)."""
    return sum(len(m.content) for m in messages) // CHARS_PER_TOKEN


class ContextWindowBuilder:
    """Builds the message list sent to the LLM from a store's published state.

    Reads never re-run the classifier or touch store state, so they are safe
    to call at any time, from anywhere.
    """

    def __init__(
        self,
        store: "ConversationStore",
        max_context_tokens: int = 8000,
        min_tier: Tier = Tier.LOW,
    ) -> None:
        self._store = store
        self._max_tokens = max_context_tokens
        self._min_tier = min_tier

    @classmethod
    def from_config(cls, store: "ConversationStore", config: "Config") -> "ContextWindowBuilder":
        return cls(
            store,
            max_context_tokens=config.window.max_context_tokens,
            min_tier=config.window.min_tier_level(),
        )

    def ordered_view(self, project_id: str) -> list[Message]:
        """Live messages sorted by (tier, created_at)."""
        return ordered_messages(self._store.snapshot(project_id))

    def select(
        self,
        project_id: str,
        max_tokens: Optional[int] = None,
        min_tier: Optional[Tier] = None,
    ) -> list[Message]:
        """Pick the messages that fit the window, in chronological order.

        Messages below ``min_tier`` are skipped. The rest are taken in
        priority order until the token budget is spent; the first (highest
        priority) message is always kept.
        """
        budget = self._max_tokens if max_tokens is None else max_tokens
        floor = self._min_tier if min_tier is None else min_tier

        snapshot = self._store.snapshot(project_id)
        selected: list[Message] = []
        used = 0
        for message_id in snapshot.ordering:
            if snapshot.tier(message_id) > floor:
                break
            message = snapshot.messages[message_id]
            cost = len(message.content) // CHARS_PER_TOKEN
            if selected and used + cost > budget:
                break
            selected.append(message)
            used += cost

        logger.debug(f"Selected {len(selected)} messages (~{used} tokens) for {project_id}")
        return sorted(selected, key=lambda m: m.created_at)

    def compose(
        self,
        project_id: str,
        max_tokens: Optional[int] = None,
        min_tier: Optional[Tier] = None,
    ) -> list[dict]:
        """Build the messages list for the LLM API.

        Returns:
            List of message dicts with 'role' and 'content' keys.
        """
        return [
            {"role": m.author.role, "content": m.content}
            for m in self.select(project_id, max_tokens=max_tokens, min_tier=min_tier)
        ]

    def tier_distribution(self, project_id: str) -> dict[str, int]:
        """Count of live messages per tier."""
        snapshot = self._store.snapshot(project_id)
        counts = {tier.name: 0 for tier in Tier}
        for message_id in snapshot.ordering:
            counts[snapshot.tier(message_id).name] += 1
        return counts
