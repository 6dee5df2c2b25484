"""Conversation data model: messages, priority tiers, domain and priority context.

One authoritative Message object per id. Every view of a conversation holds
references to the same object, so priority and resolution state is patched
in exactly one place.
"""

import re
import time
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum
from typing import Optional


class AuthorKind(str, Enum):
    """Who wrote a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @property
    def role(self) -> str:
        """LLM API role for this author."""
        return self.value


class Tier(IntEnum):
    """Priority bucket controlling inclusion in the LLM context window.

    Lower value = higher priority, so tiers sort naturally.
    """

    CRITICAL = 0  # Current user instruction
    HIGH = 1  # Recent supporting context
    MEDIUM = 2  # Background conversation, recent but not critical
    LOW = 3  # Older conversation history
    BACKGROUND_CONTEXT = 4  # Rules, documentation


@dataclass
class DomainContext:
    """Classifier output attached to a message.

    ``resolved`` only ever moves from False to True, through
    :meth:`mark_resolved`.
    """

    domain: str = "general"
    feature_tags: list[str] = field(default_factory=list)
    resolved: bool = False
    resolved_at: Optional[float] = None

    def mark_resolved(self, at: Optional[float] = None) -> bool:
        """Mark resolved in place. Returns False if it already was."""
        if self.resolved:
            return False
        self.resolved = True
        self.resolved_at = at if at is not None else time.time()
        return True


@dataclass
class PriorityContext:
    """Priority assignment for a single message."""

    tier: Tier
    reason: str
    assigned_at: float = field(default_factory=time.time)
    is_current_instruction: bool = False
    related_message_ids: set[str] = field(default_factory=set)
    file_references: set[str] = field(default_factory=set)
    starts_new_topic: bool = False


@dataclass
class Message:
    """A chat message tied to a project.

    ``created_at`` is provisional until the backend round-trip sets
    ``persisted``; after that it is authoritative.
    """

    id: str
    content: str
    author: AuthorKind
    created_at: float = field(default_factory=time.time)
    persisted: bool = False
    is_generating: bool = False
    is_project_generation: bool = False
    deployment_ready: bool = False
    domain: Optional[DomainContext] = None
    priority_context: Optional[PriorityContext] = None
    group_id: Optional[str] = None

    def __setattr__(self, name: str, value) -> None:
        if name == "id" and "id" in self.__dict__:
            raise AttributeError("Message.id is immutable")
        super().__setattr__(name, value)

    @classmethod
    def create(
        cls,
        author: AuthorKind,
        content: str,
        *,
        id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> "Message":
        """Build a new local (unpersisted) message."""
        return cls(
            id=id or new_message_id(),
            content=content,
            author=author,
            created_at=created_at if created_at is not None else time.time(),
        )

    @property
    def tier(self) -> Tier:
        """Assigned tier, LOW when nothing has been assigned yet."""
        if self.priority_context is None:
            return Tier.LOW
        return self.priority_context.tier

    @property
    def is_current_instruction(self) -> bool:
        return self.priority_context is not None and self.priority_context.is_current_instruction

    @property
    def resolved(self) -> bool:
        return self.domain is not None and self.domain.resolved


@dataclass(frozen=True)
class MessagePatch:
    """Partial update for a message. ``None`` means "leave unchanged"."""

    content: Optional[str] = None
    created_at: Optional[float] = None
    persisted: Optional[bool] = None
    is_generating: Optional[bool] = None
    is_project_generation: Optional[bool] = None
    deployment_ready: Optional[bool] = None

    @property
    def is_streaming_only(self) -> bool:
        """True when the patch only touches streamed content state."""
        streaming = {"content", "is_generating"}
        return all(
            getattr(self, f.name) is None for f in fields(self) if f.name not in streaming
        )


def apply_patch(message: Message, patch: MessagePatch) -> list[str]:
    """Merge a patch into a message in place.

    Returns:
        Names of fields whose value actually changed.
    """
    changed = []
    for f in fields(patch):
        value = getattr(patch, f.name)
        if value is None or getattr(message, f.name) == value:
            continue
        setattr(message, f.name, value)
        changed.append(f.name)
    return changed


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


_FILE_PATTERNS = [
    re.compile(r"\w+\.(?:tsx?|jsx?|css|mo|json|html|js)\b", re.IGNORECASE),
    re.compile(r"src/[\w/]+\.\w+", re.IGNORECASE),
    re.compile(r"\./[\w/]+\.\w+", re.IGNORECASE),
]


def extract_file_references(content: str) -> set[str]:
    """Pull file-like tokens (``App.tsx``, ``src/lib/api.ts``, ``./x.css``) out of text."""
    refs: set[str] = set()
    for pattern in _FILE_PATTERNS:
        refs.update(match.group(0) for match in pattern.finditer(content))
    return refs


def _keywords(content: str) -> set[str]:
    words = [word for word in content.lower().split() if len(word) > 3]
    return set(words[:10])


def starts_new_topic(message: Message, previous: list[Message]) -> bool:
    """True unless the message shares 2+ keywords with one of the last 3 messages.

    Keywords are the first ten words longer than three characters.
    """
    if not previous:
        return True
    current = _keywords(message.content)
    for prior in previous[-3:]:
        if len(current & _keywords(prior.content)) >= 2:
            return False
    return True
