"""Conversation-context prioritization for AI pair-programming chats."""

from .classifier import CachingClassifier, Classifier, DomainInfo, NullClassifier
from .config import Config
from .models import (
    AuthorKind,
    DomainContext,
    Message,
    MessagePatch,
    PriorityContext,
    Tier,
)
from .priority import PriorityDecision, assign_priority
from .resolution import propagate_closure
from .store import ConversationGroup, ConversationStore, ProjectSnapshot, StoreStats
from .sync import PersistenceSink, merge_remote
from .window import ContextWindowBuilder

__all__ = [
    "AuthorKind",
    "CachingClassifier",
    "Classifier",
    "Config",
    "ContextWindowBuilder",
    "ConversationGroup",
    "ConversationStore",
    "DomainContext",
    "DomainInfo",
    "Message",
    "MessagePatch",
    "NullClassifier",
    "PersistenceSink",
    "PriorityContext",
    "PriorityDecision",
    "ProjectSnapshot",
    "StoreStats",
    "Tier",
    "assign_priority",
    "merge_remote",
    "propagate_closure",
]
