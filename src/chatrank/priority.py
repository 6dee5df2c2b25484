"""Context-aware priority assignment.

Pure decision table mapping a message, its history and the current
instruction to a tier. First matching rule wins. The thresholds and windows
below are fixed: identical classifier outputs, recency and age must always
produce the same tier.
"""

from typing import NamedTuple, Optional, Sequence

from .classifier import Classifier
from .models import AuthorKind, Message, Tier

# Windows (in messages)
RECENCY_WINDOW = 5
AGE_DECAY_THRESHOLD = 10

# Relevance cut-offs
DEFAULT_RELEVANCE = 0.5
RESOLVED_ERROR_RELEVANCE = 0.6
ACTIVE_ERROR_RELEVANCE = 0.5
COMPLETION_RELEVANCE = 0.4
RECENT_HIGH_RELEVANCE = 0.6
RECENT_MEDIUM_RELEVANCE = 0.4
AGED_RELEVANCE = 0.7
RECENT_USER_RELEVANCE = 0.5

ERROR_LEXICON = ("error", "failed", "issue")
COMPLETION_MARKERS = ("generation complete", "ready to deploy")

REASON_CURRENT_INSTRUCTION = "Current user instruction - highest priority"
REASON_PREVIOUS_INSTRUCTION = "Previous instruction - now supporting context"
REASON_EXCLUDED = "Excluded - resolved or expired message"
REASON_RECENT_RESOLVED_ERROR = "Recently resolved error - moderate relevance to current question"
REASON_RESOLVED_ERROR = "Resolved error - low priority for future contexts"
REASON_RELEVANT_ERROR = "Active error relevant to current question"
REASON_ACTIVE_ERROR = "Active error requiring attention"
REASON_IRRELEVANT_ERROR = "Active error but low relevance to current question"
REASON_COMPLETION = "Project generation completion"
REASON_IRRELEVANT_COMPLETION = "Generation completion but low relevance to current question"
REASON_RECENT_HIGH = "Recent AI response with high relevance to current question"
REASON_RECENT_MEDIUM = "Recent AI response with moderate relevance"
REASON_RECENT_LOW = "Recent AI response but low relevance to current question"
REASON_AGED_RELEVANT = "Older message but highly relevant to current question"
REASON_AGED = "Older message with low relevance"
REASON_SYSTEM_DEFAULT = "Standard AI response - supporting context"
REASON_RECENT_USER = "Recent user message - relevant context"
REASON_RECENT_USER_LOW = "Recent user message but low relevance"
REASON_OLD_USER = "Older user message - background context"
REASON_FALLBACK = "Default priority assignment"
REASON_CLASSIFIER_UNAVAILABLE = "Classifier unavailable - degraded to default priority"


class PriorityDecision(NamedTuple):
    tier: Tier
    reason: str


def _position(message: Message, history: Sequence[Message]) -> tuple[int, int]:
    """(index, total) of the message; a message not in history counts as its new tail."""
    for index, candidate in enumerate(history):
        if candidate.id == message.id:
            return index, len(history)
    return len(history), len(history) + 1


def _is_error_report(content: str) -> bool:
    lowered = content.lower()
    return any(word in lowered for word in ERROR_LEXICON)


def _is_completion(message: Message) -> bool:
    if message.is_project_generation or message.deployment_ready:
        return True
    lowered = message.content.lower()
    return any(marker in lowered for marker in COMPLETION_MARKERS)


def assign_priority(
    message: Message,
    history: Sequence[Message],
    classifier: Classifier,
    is_current_instruction: bool = False,
    current_instruction: Optional[Message] = None,
) -> PriorityDecision:
    """Decide the tier for a message.

    Assistant replies follow the same rules as system messages; only user
    messages take the user branch.

    Args:
        message: Message to prioritize.
        history: Time-ordered working set the message belongs to.
        classifier: Source of relevance, exclusion and resolution signals.
        is_current_instruction: Whether the message is the current instruction.
        current_instruction: The current instruction, used for relevance.

    Returns:
        The chosen tier and a human-readable reason.
    """
    if is_current_instruction:
        return PriorityDecision(Tier.CRITICAL, REASON_CURRENT_INSTRUCTION)

    current_id = current_instruction.id if current_instruction is not None else None
    if classifier.should_exclude(message, current_id):
        return PriorityDecision(Tier.LOW, REASON_EXCLUDED)

    index, total = _position(message, history)
    is_recent = index >= max(0, total - RECENCY_WINDOW)
    age = total - index

    relevance = DEFAULT_RELEVANCE
    if current_instruction is not None:
        relevance = classifier.relevance(current_instruction, message)
    no_instruction = current_instruction is None

    domain = message.domain or classifier.detect_domain(message).to_context()
    resolved = domain.resolved or classifier.is_error_resolved(message, history)

    if message.author is not AuthorKind.USER:
        if _is_error_report(message.content):
            if resolved:
                if is_recent and relevance > RESOLVED_ERROR_RELEVANCE:
                    return PriorityDecision(Tier.MEDIUM, REASON_RECENT_RESOLVED_ERROR)
                return PriorityDecision(Tier.LOW, REASON_RESOLVED_ERROR)
            if relevance > ACTIVE_ERROR_RELEVANCE or no_instruction:
                reason = REASON_RELEVANT_ERROR if relevance > ACTIVE_ERROR_RELEVANCE else REASON_ACTIVE_ERROR
                return PriorityDecision(Tier.HIGH, reason)
            return PriorityDecision(Tier.MEDIUM, REASON_IRRELEVANT_ERROR)

        if _is_completion(message):
            if relevance > COMPLETION_RELEVANCE or no_instruction:
                return PriorityDecision(Tier.HIGH, REASON_COMPLETION)
            return PriorityDecision(Tier.MEDIUM, REASON_IRRELEVANT_COMPLETION)

        if is_recent:
            if relevance > RECENT_HIGH_RELEVANCE:
                return PriorityDecision(Tier.HIGH, REASON_RECENT_HIGH)
            if relevance > RECENT_MEDIUM_RELEVANCE:
                return PriorityDecision(Tier.MEDIUM, REASON_RECENT_MEDIUM)
            return PriorityDecision(Tier.MEDIUM, REASON_RECENT_LOW)

        if age > AGE_DECAY_THRESHOLD:
            if relevance > AGED_RELEVANCE:
                return PriorityDecision(Tier.MEDIUM, REASON_AGED_RELEVANT)
            return PriorityDecision(Tier.LOW, REASON_AGED)

        return PriorityDecision(Tier.MEDIUM, REASON_SYSTEM_DEFAULT)

    if message.author is AuthorKind.USER:
        if is_recent:
            if relevance > RECENT_USER_RELEVANCE or no_instruction:
                return PriorityDecision(Tier.MEDIUM, REASON_RECENT_USER)
            return PriorityDecision(Tier.LOW, REASON_RECENT_USER_LOW)
        return PriorityDecision(Tier.LOW, REASON_OLD_USER)

    return PriorityDecision(Tier.LOW, REASON_FALLBACK)
