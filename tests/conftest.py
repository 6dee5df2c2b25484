"""Pytest configuration and fixtures for chatrank tests."""

import itertools
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from chatrank.classifier import DomainInfo
from chatrank.models import AuthorKind, Message
from chatrank.store import ConversationStore

CLOSURE_PHRASES = ("now let's work on", "that works", "moving on to")

# First matching substring wins
DEFAULT_RULES = [
    # The closing message names the feature it leaves behind
    ("dashboard", DomainInfo(domain="ui", feature_tags=("dashboard", "login"))),
    ("login", DomainInfo(domain="auth", feature_tags=("login",))),
    ("database", DomainInfo(domain="data", feature_tags=("database",))),
    ("payment", DomainInfo(domain="billing", feature_tags=("payment",))),
]


class StubClassifier:
    """Table-driven classifier: substring rules map content to a domain."""

    def __init__(
        self,
        rules: Optional[list[tuple[str, DomainInfo]]] = None,
        closure_phrases: Sequence[str] = CLOSURE_PHRASES,
    ) -> None:
        self.rules = list(DEFAULT_RULES if rules is None else rules)
        self.closure_phrases = tuple(closure_phrases)
        self.excluded: set[str] = set()
        self.resolved_errors: set[str] = set()
        self.fail = False
        self.domain_calls = 0

    def _info(self, message: Message) -> DomainInfo:
        lowered = message.content.lower()
        for pattern, info in self.rules:
            if pattern in lowered:
                return info
        return DomainInfo()

    def detect_domain(self, message: Message) -> DomainInfo:
        if self.fail:
            raise RuntimeError("classifier offline")
        self.domain_calls += 1
        return self._info(message)

    def relevance(self, a: Message, b: Message) -> float:
        if self.fail:
            raise RuntimeError("classifier offline")
        info_a, info_b = self._info(a), self._info(b)
        if info_a.domain != "general" and info_a.domain == info_b.domain:
            return 0.8
        if set(info_a.feature_tags) & set(info_b.feature_tags):
            return 0.7
        return 0.2

    def should_exclude(self, message: Message, current_instruction_id: Optional[str] = None) -> bool:
        return message.id in self.excluded and message.id != current_instruction_id

    def is_error_resolved(self, message: Message, history: Sequence[Message]) -> bool:
        return message.id in self.resolved_errors

    def detects_closure(self, message: Message, prior_messages: Sequence[Message]) -> bool:
        lowered = message.content.lower()
        return any(phrase in lowered for phrase in self.closure_phrases)


@pytest.fixture
def classifier() -> StubClassifier:
    return StubClassifier()


@pytest.fixture
def store(classifier: StubClassifier) -> ConversationStore:
    return ConversationStore(classifier=classifier)


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Factory for messages with strictly increasing timestamps.

    Returns:
        Callable ``(author, content, id=None) -> Message``.
    """
    clock = itertools.count(1000)

    def factory(author: AuthorKind, content: str, id: Optional[str] = None) -> Message:
        return Message.create(author, content, id=id, created_at=float(next(clock)))

    return factory


@pytest.fixture
def temp_config(tmp_path: Path) -> Path:
    """Create temporary config file.

    Returns:
        Path to config file.
    """
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
store:
  cleared_notice: "History wiped for {project_name}."
  classifier_cache_size: 16
window:
  max_context_tokens: 2000
  min_tier: medium
logging:
  level: DEBUG
"""
    )
    return config_path


def assert_ordering_invariant(store: ConversationStore, project_id: str) -> None:
    """Published ordering is the live ids sorted by (tier, created_at)."""
    snapshot = store.snapshot(project_id)
    live = [snapshot.messages[i] for i in snapshot.timeline if i not in snapshot.excluded]
    expected = sorted(live, key=lambda m: (int(m.tier), m.created_at))
    assert list(snapshot.ordering) == [m.id for m in expected]


def assert_single_current_instruction(store: ConversationStore, project_id: str) -> None:
    """At most one holder, always CRITICAL, matching the pointer."""
    snapshot = store.snapshot(project_id)
    holders = [m for m in snapshot.messages.values() if m.is_current_instruction]
    assert len(holders) <= 1
    if holders:
        assert holders[0].priority_context.tier.name == "CRITICAL"
        assert snapshot.current_instruction_id == holders[0].id
    else:
        assert snapshot.current_instruction_id is None
