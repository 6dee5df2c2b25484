"""Classifier contract consumed by the prioritization engine.

The text heuristics (domain detection, relevance scoring, closure detection)
live in the host product. This module defines what the engine needs from
them, a neutral default, and an LRU cache for the expensive calls.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, runtime_checkable

from .models import DomainContext, Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainInfo:
    """Result of :meth:`Classifier.detect_domain`."""

    domain: str = "general"
    feature_tags: tuple[str, ...] = ()
    resolved: bool = False
    resolved_at: Optional[float] = None

    def to_context(self) -> DomainContext:
        return DomainContext(
            domain=self.domain,
            feature_tags=list(self.feature_tags),
            resolved=self.resolved,
            resolved_at=self.resolved_at,
        )


@runtime_checkable
class Classifier(Protocol):
    """Message classifier supplied by the host product."""

    def detect_domain(self, message: Message) -> DomainInfo:
        """Domain, feature tags and resolution state of a message."""
        ...

    def relevance(self, a: Message, b: Message) -> float:
        """Topical relevance of *b* to *a*, in [0, 1]."""
        ...

    def should_exclude(self, message: Message, current_instruction_id: Optional[str] = None) -> bool:
        """True if the message should leave the working set (e.g. an expired retry notice)."""
        ...

    def is_error_resolved(self, message: Message, history: Sequence[Message]) -> bool:
        """True if a later message in *history* resolved the error reported by *message*."""
        ...

    def detects_closure(self, message: Message, prior_messages: Sequence[Message]) -> bool:
        """True if *message* signals the user is done with the previous topic."""
        ...


class NullClassifier:
    """Neutral classifier: one generic domain, medium relevance, no signals."""

    def detect_domain(self, message: Message) -> DomainInfo:
        return DomainInfo()

    def relevance(self, a: Message, b: Message) -> float:
        return 0.5

    def should_exclude(self, message: Message, current_instruction_id: Optional[str] = None) -> bool:
        return False

    def is_error_resolved(self, message: Message, history: Sequence[Message]) -> bool:
        return False

    def detects_closure(self, message: Message, prior_messages: Sequence[Message]) -> bool:
        return False


class CachingClassifier:
    """LRU cache in front of a classifier's per-message calls.

    ``detect_domain`` and ``relevance`` depend only on message content, so
    they are cached keyed by id and content. The history-dependent calls
    pass straight through. Exceptions are never cached. The cache is shared by
    every project of a store, so lookups and inserts hold a lock; the wrapped
    classifier is called outside it.
    """

    def __init__(self, inner: Classifier, maxsize: int = 512) -> None:
        self._inner = inner
        self._maxsize = maxsize
        self._domains: OrderedDict[tuple, DomainInfo] = OrderedDict()
        self._relevance: OrderedDict[tuple, float] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def inner(self) -> Classifier:
        return self._inner

    def detect_domain(self, message: Message) -> DomainInfo:
        key = (message.id, message.content)
        cached = self._get(self._domains, key)
        if cached is not None:
            return cached
        info = self._inner.detect_domain(message)
        self._put(self._domains, key, info)
        return info

    def relevance(self, a: Message, b: Message) -> float:
        key = (a.id, a.content, b.id, b.content)
        cached = self._get(self._relevance, key)
        if cached is not None:
            return cached
        score = self._inner.relevance(a, b)
        self._put(self._relevance, key, score)
        return score

    def should_exclude(self, message: Message, current_instruction_id: Optional[str] = None) -> bool:
        return self._inner.should_exclude(message, current_instruction_id)

    def is_error_resolved(self, message: Message, history: Sequence[Message]) -> bool:
        return self._inner.is_error_resolved(message, history)

    def detects_closure(self, message: Message, prior_messages: Sequence[Message]) -> bool:
        return self._inner.detects_closure(message, prior_messages)

    def clear(self) -> None:
        """Drop all cached results."""
        with self._lock:
            size = len(self._domains) + len(self._relevance)
            self._domains.clear()
            self._relevance.clear()
        if size > 0:
            logger.debug(f"Classifier cache cleared ({size} entries)")

    def _get(self, cache: OrderedDict, key: tuple):
        with self._lock:
            if key not in cache:
                self.misses += 1
                return None
            cache.move_to_end(key)
            self.hits += 1
            return cache[key]

    def _put(self, cache: OrderedDict, key: tuple, value) -> None:
        with self._lock:
            cache[key] = value
            cache.move_to_end(key)
            while len(cache) > self._maxsize:
                cache.popitem(last=False)


def ensure_domain(message: Message, classifier: Classifier) -> DomainContext:
    """Return the message's domain context, classifying and attaching it if absent."""
    if message.domain is None:
        message.domain = classifier.detect_domain(message).to_context()
    return message.domain
