"""Authoritative per-project conversation store.

Owns every mutation of conversation state and enforces the invariants:

- at most one current instruction per project, always CRITICAL
- promoting a new current instruction demotes the previous one to HIGH
- one message object per id; session/project/current views are derived
- the published priority ordering is the live messages sorted by
  (tier, created_at)
- resolution never reverts

Mutations of a project run to completion under that project's lock. Reads
go through the last published :class:`ProjectSnapshot` and never block.
Classifier and persistence failures are logged and degraded, never raised.
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence

from .classifier import CachingClassifier, Classifier, NullClassifier, ensure_domain
from .config import DEFAULT_CLEARED_NOTICE
from .logging import set_active_project
from .models import (
    AuthorKind,
    Message,
    MessagePatch,
    PriorityContext,
    Tier,
    apply_patch,
    extract_file_references,
    starts_new_topic,
)
from .priority import (
    REASON_CLASSIFIER_UNAVAILABLE,
    REASON_CURRENT_INSTRUCTION,
    REASON_PREVIOUS_INSTRUCTION,
    REASON_SYSTEM_DEFAULT,
    PriorityDecision,
    assign_priority,
)
from .resolution import propagate_closure
from .sync import PersistenceSink, merge_remote
from .window import ordered_messages

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


@dataclass
class StoreStats:
    """Warning counters for degraded operations."""

    unknown_ids: int = 0
    classifier_failures: int = 0
    duplicate_appends: int = 0
    persistence_failures: int = 0


@dataclass
class ConversationGroup:
    """Messages treated as one logical exchange (ask, answer, follow-ons)."""

    id: str
    project_id: str
    message_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProjectSnapshot:
    """Last committed state of a project, published by reference swap.

    ``messages`` holds the shared Message objects. Priority data is read
    from ``contexts``, copies taken at commit time, so a reader never pairs
    an in-flight tier with a committed ordering.
    """

    ordering: tuple[str, ...] = ()  # live ids by (tier, created_at)
    timeline: tuple[str, ...] = ()  # all ids by created_at
    messages: Mapping[str, Message] = field(default_factory=lambda: MappingProxyType({}))
    contexts: Mapping[str, PriorityContext] = field(default_factory=lambda: MappingProxyType({}))
    excluded: frozenset[str] = frozenset()
    current_instruction_id: Optional[str] = None

    def tier(self, message_id: str) -> Tier:
        """Committed tier of a message, LOW when none was assigned."""
        context = self.contexts.get(message_id)
        return context.tier if context is not None else Tier.LOW


@dataclass
class _Session:
    id: str
    project_id: str
    started_at: float = field(default_factory=time.time)
    message_ids: list[str] = field(default_factory=list)


def priority_key(message: Message) -> tuple[int, float]:
    return (int(message.tier), message.created_at)


def _copy_context(context: PriorityContext) -> PriorityContext:
    return replace(
        context,
        related_message_ids=set(context.related_message_ids),
        file_references=set(context.file_references),
    )


class ProjectConversation:
    """Mutable state of one project. Only touched while holding ``lock``."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        self.messages: dict[str, Message] = {}
        self.current_instruction_id: Optional[str] = None
        self.excluded: set[str] = set()
        self.group_ids: set[str] = set()
        self.lock = threading.RLock()
        self.snapshot = ProjectSnapshot()

    def timeline(self) -> list[Message]:
        """All messages, oldest first."""
        return sorted(self.messages.values(), key=lambda m: m.created_at)

    def live_timeline(self) -> list[Message]:
        return [m for m in self.timeline() if m.id not in self.excluded]

    def publish(self) -> ProjectSnapshot:
        timeline = self.timeline()
        live = [m for m in timeline if m.id not in self.excluded]
        self.snapshot = ProjectSnapshot(
            ordering=tuple(m.id for m in sorted(live, key=priority_key)),
            timeline=tuple(m.id for m in timeline),
            messages=MappingProxyType(dict(self.messages)),
            contexts=MappingProxyType({
                m.id: _copy_context(m.priority_context)
                for m in timeline
                if m.priority_context is not None
            }),
            excluded=frozenset(self.excluded),
            current_instruction_id=self.current_instruction_id,
        )
        return self.snapshot


class ConversationStore:
    """Per-project message tables, priority index and current-instruction pointer.

    Construct one per session and pass it to whatever needs it.
    """

    def __init__(
        self,
        classifier: Optional[Classifier] = None,
        persistence: Optional[PersistenceSink] = None,
        classifier_cache_size: int = 512,
        cleared_notice: str = DEFAULT_CLEARED_NOTICE,
        persist_streaming_updates: bool = False,
    ) -> None:
        """Initialize the store.

        Args:
            classifier: Message classifier; a neutral one when omitted.
            persistence: Optional async sink for fire-and-forget writes.
            classifier_cache_size: LRU size for classifier results (0 disables).
            cleared_notice: Template for the notice seeded by :meth:`clear`.
            persist_streaming_updates: Persist every streamed chunk, not just
                finished content.
        """
        inner = classifier if classifier is not None else NullClassifier()
        if classifier_cache_size > 0:
            self._classifier: Classifier = CachingClassifier(inner, maxsize=classifier_cache_size)
        else:
            self._classifier = inner
        self._persistence = persistence
        self._cleared_notice = cleared_notice
        self._persist_streaming = persist_streaming_updates

        self._lock = threading.RLock()  # guards the maps below
        self._projects: dict[str, ProjectConversation] = {}
        self._message_index: dict[str, str] = {}  # message id -> project id
        self._groups: dict[str, ConversationGroup] = {}
        self._active_project: Optional[str] = None
        self._session: Optional[_Session] = None
        self._pending_writes: set[asyncio.Task] = set()

        self.stats = StoreStats()

    @classmethod
    def from_config(
        cls,
        config: "Config",
        classifier: Optional[Classifier] = None,
        persistence: Optional[PersistenceSink] = None,
    ) -> "ConversationStore":
        return cls(
            classifier=classifier,
            persistence=persistence,
            classifier_cache_size=config.store.classifier_cache_size,
            cleared_notice=config.store.cleared_notice,
            persist_streaming_updates=config.store.persist_streaming_updates,
        )

    @property
    def classifier(self) -> Classifier:
        return self._classifier

    @property
    def project_ids(self) -> list[str]:
        return list(self._projects)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(
        self,
        project_id: str,
        message: Message,
        *,
        as_instruction: Optional[bool] = None,
    ) -> Optional[PriorityContext]:
        """Add a message to a project.

        Classifies the message, assigns its priority unless it already has
        one, resolves messages closed by it, and republishes the ordering.
        A user message without a priority context becomes the current
        instruction unless ``as_instruction`` is False.

        Returns:
            The message's priority context, or None for a duplicate id.
        """
        conv = self._conversation(project_id)
        with conv.lock:
            if message.id in self._message_index:
                self.stats.duplicate_appends += 1
                logger.warning(f"Ignoring duplicate append of {message.id} to {project_id}")
                return None

            history = conv.live_timeline()
            self._classify(message)

            if message.priority_context is None:
                if as_instruction is None:
                    is_instruction = message.author is AuthorKind.USER
                else:
                    is_instruction = as_instruction
                current = None
                if not is_instruction and conv.current_instruction_id is not None:
                    current = conv.messages.get(conv.current_instruction_id)
                decision = self._decide(message, history + [message], is_instruction, current)
                message.priority_context = self._new_context(message, decision, is_instruction, history)

            if message.author is AuthorKind.USER:
                self._propagate(message, history)

            conv.messages[message.id] = message
            with self._lock:
                self._message_index[message.id] = project_id
                if self._session is not None and self._session.project_id == project_id:
                    self._session.message_ids.append(message.id)

            if message.is_current_instruction:
                self._promote(conv, message)
            conv.publish()
            context = message.priority_context

        logger.debug(
            f"Appended {message.id} to {project_id}: tier={context.tier.name} ({context.reason})"
        )
        self._persist("save_message", project_id, message)
        return context

    def update(self, message_id: str, patch: MessagePatch) -> bool:
        """Patch a message's content or state.

        Never recomputes the tier; call :meth:`reassign_priority` or
        :meth:`bulk_reassign` for that. Streaming chunks (content and
        ``is_generating`` only, while still generating) are applied in place
        without taking the project lock or republishing.

        Returns:
            False if the message id is unknown.
        """
        conv = self._owner(message_id)
        message = conv.messages.get(message_id) if conv is not None else None
        if message is None:
            self._unknown(message_id, "update")
            return False

        if patch.is_streaming_only:
            changed = apply_patch(message, patch)
            if self._needs_reference_refresh(message, changed):
                with conv.lock:
                    self._refresh_file_references(message)
                    conv.publish()
        else:
            with conv.lock:
                changed = apply_patch(message, patch)
                refreshed = self._needs_reference_refresh(message, changed)
                if refreshed:
                    self._refresh_file_references(message)
                if refreshed or "created_at" in changed:
                    conv.publish()

        finished = "is_generating" in changed and not message.is_generating
        settled = "content" in changed and (not message.is_generating or self._persist_streaming)
        if finished or settled:
            self._persist("update_message", conv.project_id, message)
        return True

    def reassign_priority(
        self,
        message_id: str,
        tier: Tier,
        reason: str,
        is_current_instruction: bool = False,
    ) -> bool:
        """Set a message's tier explicitly.

        Idempotent: repeating an identical call leaves the store unchanged.
        Making a message the current instruction forces CRITICAL and demotes
        the previous holder.

        Returns:
            False if the message id is unknown.
        """
        conv = self._owner(message_id)
        if conv is None:
            self._unknown(message_id, "reassign_priority")
            return False

        with conv.lock:
            message = conv.messages.get(message_id)
            if message is None:
                self._unknown(message_id, "reassign_priority")
                return False

            if is_current_instruction and tier is not Tier.CRITICAL:
                logger.debug(f"Current instruction {message_id} forced to CRITICAL (requested {tier.name})")
                tier = Tier.CRITICAL

            context = message.priority_context
            holds_pointer = conv.current_instruction_id == message_id
            if (
                context is not None
                and context.tier == tier
                and context.reason == reason
                and context.is_current_instruction == is_current_instruction
                and holds_pointer == is_current_instruction
            ):
                return True

            if context is None:
                context = PriorityContext(
                    tier=tier,
                    reason=reason,
                    file_references=extract_file_references(message.content),
                )
                message.priority_context = context
            else:
                context.tier = tier
                context.reason = reason
                context.assigned_at = time.time()
            context.is_current_instruction = is_current_instruction

            if is_current_instruction:
                self._promote(conv, message)
            elif holds_pointer:
                conv.current_instruction_id = None
            conv.publish()

        logger.debug(f"Reassigned {message_id}: tier={tier.name} current={is_current_instruction}")
        return True

    def mark_current_instruction(self, message_id: str) -> bool:
        """Make a message the project's current instruction."""
        return self.reassign_priority(
            message_id, Tier.CRITICAL, REASON_CURRENT_INSTRUCTION, is_current_instruction=True
        )

    def bulk_reassign(
        self,
        project_id: str,
        current_instruction_id: Optional[str] = None,
    ) -> tuple[str, ...]:
        """Recompute every tier in a project against a (new) current instruction.

        Excluded messages leave the live working set but stay in the table.
        Closure propagation is re-run over the live messages in order.

        Returns:
            The republished priority ordering.
        """
        conv = self._projects.get(project_id)
        if conv is None:
            logger.warning(f"bulk_reassign: unknown project {project_id}")
            return ()

        with conv.lock:
            active: list[Message] = []
            excluded: set[str] = set()
            for message in conv.timeline():
                if self._should_exclude(message, current_instruction_id):
                    excluded.add(message.id)
                else:
                    active.append(message)

            current = None
            if current_instruction_id is not None:
                current = next((m for m in active if m.id == current_instruction_id), None)
                if current_instruction_id not in conv.messages:
                    self._unknown(current_instruction_id, "bulk_reassign")
                elif current is None:
                    logger.warning(f"bulk_reassign: current instruction {current_instruction_id} is excluded")

            # Classifier callbacks may read the store; contexts are staged
            # and only written at commit.
            staged: list[tuple[Message, PriorityContext]] = []
            for index, message in enumerate(active):
                prior = active[:index]
                self._classify(message)
                if message.author is AuthorKind.USER and prior:
                    self._propagate(message, prior)

                is_instruction = message is current
                decision = self._decide(message, active, is_instruction, None if is_instruction else current)
                context = self._new_context(message, decision, is_instruction, prior)
                if message.priority_context is not None:
                    context.related_message_ids = set(message.priority_context.related_message_ids)
                staged.append((message, context))

            for message, context in staged:
                message.priority_context = context
            conv.current_instruction_id = current.id if current is not None else None
            now = time.time()
            for message_id in excluded:
                message = conv.messages[message_id]
                if message.is_current_instruction:
                    self._demote(message, now)
            conv.excluded = excluded
            snapshot = conv.publish()

        logger.info(
            f"Reassigned {len(active)} messages in {project_id} ({len(excluded)} excluded), "
            f"current instruction: {snapshot.current_instruction_id}"
        )
        return snapshot.ordering

    def clear(self, project_id: str, project_name: Optional[str] = None) -> Message:
        """Purge a project's history and seed it with a "history cleared" notice.

        Returns:
            The synthetic notice message.
        """
        conv = self._conversation(project_id)
        with conv.lock:
            with self._lock:
                for message_id in conv.messages:
                    self._message_index.pop(message_id, None)
                for group_id in conv.group_ids:
                    self._groups.pop(group_id, None)
                if self._session is not None and self._session.project_id == project_id:
                    self._session.message_ids.clear()

            purged = len(conv.messages)
            conv.messages = {}
            conv.excluded = set()
            conv.group_ids = set()
            conv.current_instruction_id = None

            notice = Message.create(
                AuthorKind.SYSTEM,
                self._cleared_notice.format(project_name=project_name or "your project"),
                id=f"cleared-{uuid.uuid4().hex[:12]}",
            )
            self._classify(notice)
            notice.priority_context = PriorityContext(
                tier=Tier.MEDIUM,
                reason=REASON_SYSTEM_DEFAULT,
                starts_new_topic=True,
            )
            conv.messages[notice.id] = notice
            with self._lock:
                self._message_index[notice.id] = project_id
            conv.publish()

        logger.info(f"Cleared {purged} messages from {project_id}")
        self._persist("clear_project", project_id)
        return notice

    def hydrate(self, project_id: str, remote_messages: Sequence[Message]) -> int:
        """Merge messages reloaded from the backend into a project.

        Remote copies win for shared ids; local messages missing from the
        response are kept.
        Messages lacking classifier output or a priority get them here, with
        no current instruction as relevance reference.

        Returns:
            Number of messages in the project after the merge.
        """
        conv = self._conversation(project_id)
        with conv.lock:
            merged = merge_remote(list(conv.messages.values()), remote_messages)
            with self._lock:
                for message_id in conv.messages:
                    self._message_index.pop(message_id, None)
                for message in merged:
                    self._message_index[message.id] = project_id
            conv.messages = {m.id: m for m in merged}
            conv.excluded &= set(conv.messages)

            staged: list[tuple[Message, PriorityContext]] = []
            for index, message in enumerate(merged):
                self._classify(message)
                if message.priority_context is None:
                    decision = self._decide(message, merged, False, None)
                    staged.append((message, self._new_context(message, decision, False, merged[:index])))

            for message, context in staged:
                message.priority_context = context
            self._normalize_current_instruction(conv)
            conv.publish()

        logger.info(f"Hydrated {project_id}: {len(remote_messages)} remote, {len(merged)} total")
        return len(merged)

    def mark_resolved(self, project_id: str, *message_ids: str) -> int:
        """Explicitly resolve messages, e.g. once generated files were applied.

        Returns:
            Number of messages newly marked resolved.
        """
        conv = self._projects.get(project_id)
        if conv is None:
            logger.warning(f"mark_resolved: unknown project {project_id}")
            return 0

        count = 0
        with conv.lock:
            for message_id in message_ids:
                message = conv.messages.get(message_id)
                if message is None:
                    self._unknown(message_id, "mark_resolved")
                    continue
                self._classify(message)
                if message.domain is not None and message.domain.mark_resolved():
                    count += 1
        logger.debug(f"Marked {count} messages resolved in {project_id}")
        return count

    # ------------------------------------------------------------------
    # Conversation groups
    # ------------------------------------------------------------------

    def create_group(self, project_id: str, message_ids: Iterable[str]) -> Optional[str]:
        """Link messages into one exchange.

        Returns:
            The new group id, or None if none of the ids are known.
        """
        conv = self._projects.get(project_id)
        if conv is None:
            logger.warning(f"create_group: unknown project {project_id}")
            return None

        with conv.lock:
            members = []
            for message_id in message_ids:
                message = conv.messages.get(message_id)
                if message is None:
                    self._unknown(message_id, "create_group")
                    continue
                members.append(message)
            if not members:
                return None

            timestamp = int(time.time() * 1000)
            group = ConversationGroup(
                id=f"group_{timestamp}_{uuid.uuid4().hex[:6]}",
                project_id=project_id,
            )
            with self._lock:
                self._groups[group.id] = group
            conv.group_ids.add(group.id)
            for message in members:
                self._attach(conv, group, message)

        logger.debug(f"Created group {group.id} with {len(group.message_ids)} messages")
        return group.id

    def add_to_group(self, group_id: str, message_id: str) -> bool:
        """Add a message to an existing group of the same project."""
        group = self._groups.get(group_id)
        if group is None:
            logger.warning(f"add_to_group: unknown group {group_id}")
            return False

        conv = self._projects.get(group.project_id)
        if conv is None:
            return False
        with conv.lock:
            message = conv.messages.get(message_id)
            if message is None:
                self._unknown(message_id, "add_to_group")
                return False
            if message_id not in group.message_ids:
                self._attach(conv, group, message)
        return True

    def get_group(self, group_id: str) -> Optional[ConversationGroup]:
        return self._groups.get(group_id)

    # ------------------------------------------------------------------
    # Reads (lock-free, last committed state)
    # ------------------------------------------------------------------

    def snapshot(self, project_id: str) -> ProjectSnapshot:
        conv = self._projects.get(project_id)
        return conv.snapshot if conv is not None else ProjectSnapshot()

    def ordered_view(self, project_id: str) -> list[Message]:
        """Live messages sorted by (tier, created_at)."""
        return ordered_messages(self.snapshot(project_id))

    def get_priority_context(self, message_id: str) -> Optional[PriorityContext]:
        """Committed priority context of a message (a copy; later commits do not change it)."""
        project_id = self._message_index.get(message_id)
        if project_id is None:
            return None
        return self.snapshot(project_id).contexts.get(message_id)

    def get_message(self, message_id: str) -> Optional[Message]:
        project_id = self._message_index.get(message_id)
        if project_id is None:
            return None
        return self.snapshot(project_id).messages.get(message_id)

    def current_instruction(self, project_id: str) -> Optional[Message]:
        snapshot = self.snapshot(project_id)
        if snapshot.current_instruction_id is None:
            return None
        return snapshot.messages.get(snapshot.current_instruction_id)

    def project_messages(self, project_id: str) -> list[Message]:
        """Every message of a project, oldest first (excluded ones included)."""
        snapshot = self.snapshot(project_id)
        return [snapshot.messages[message_id] for message_id in snapshot.timeline]

    # ------------------------------------------------------------------
    # Active project and session views
    # ------------------------------------------------------------------

    @property
    def active_project(self) -> Optional[str]:
        return self._active_project

    def activate_project(self, project_id: Optional[str]) -> None:
        """Switch the project backing :meth:`current_messages`."""
        self._active_project = project_id
        set_active_project(project_id)
        logger.debug(f"Active project: {project_id}")

    def current_messages(self) -> list[Message]:
        """Live messages of the active project, oldest first."""
        if self._active_project is None:
            return []
        snapshot = self.snapshot(self._active_project)
        return [
            snapshot.messages[message_id]
            for message_id in snapshot.timeline
            if message_id not in snapshot.excluded
        ]

    def start_session(self, project_id: str) -> str:
        """Start tracking messages appended to a project from now on."""
        session_id = f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        with self._lock:
            self._session = _Session(id=session_id, project_id=project_id)
        logger.info(f"Started session {session_id} for {project_id}")
        return session_id

    def end_session(self) -> None:
        with self._lock:
            if self._session is not None:
                logger.info(f"Ended session {self._session.id}")
            self._session = None

    def session_messages(self) -> list[Message]:
        """Live messages appended during the current session, in priority order."""
        session = self._session
        if session is None:
            return []
        snapshot = self.snapshot(session.project_id)
        in_session = set(session.message_ids)
        return [
            snapshot.messages[message_id]
            for message_id in snapshot.ordering
            if message_id in in_session
        ]

    def get_status(self, project_id: str) -> dict:
        """Status dict for debugging."""
        snapshot = self.snapshot(project_id)
        tiers = {tier.name: 0 for tier in Tier}
        for message_id in snapshot.ordering:
            tiers[snapshot.tier(message_id).name] += 1
        conv = self._projects.get(project_id)
        return {
            "message_count": len(snapshot.timeline),
            "live_count": len(snapshot.ordering),
            "excluded_count": len(snapshot.excluded),
            "current_instruction_id": snapshot.current_instruction_id,
            "group_count": len(conv.group_ids) if conv is not None else 0,
            "tiers": tiers,
            "unknown_ids": self.stats.unknown_ids,
            "classifier_failures": self.stats.classifier_failures,
            "duplicate_appends": self.stats.duplicate_appends,
            "persistence_failures": self.stats.persistence_failures,
        }

    async def flush(self) -> None:
        """Wait for in-flight background writes."""
        pending = list(self._pending_writes)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _conversation(self, project_id: str) -> ProjectConversation:
        with self._lock:
            conv = self._projects.get(project_id)
            if conv is None:
                conv = ProjectConversation(project_id)
                self._projects[project_id] = conv
            return conv

    def _owner(self, message_id: str) -> Optional[ProjectConversation]:
        project_id = self._message_index.get(message_id)
        if project_id is None:
            return None
        return self._projects.get(project_id)

    def _unknown(self, message_id: str, operation: str) -> None:
        self.stats.unknown_ids += 1
        logger.warning(f"{operation}: unknown message id {message_id}")

    def _classifier_failed(self, operation: str, message: Message, exc: Exception) -> None:
        self.stats.classifier_failures += 1
        logger.warning(f"Classifier {operation} failed for {message.id}: {exc}")

    def _classify(self, message: Message) -> None:
        try:
            ensure_domain(message, self._classifier)
        except Exception as e:
            self._classifier_failed("detect_domain", message, e)

    def _should_exclude(self, message: Message, current_instruction_id: Optional[str]) -> bool:
        try:
            return self._classifier.should_exclude(message, current_instruction_id)
        except Exception as e:
            self._classifier_failed("should_exclude", message, e)
            return False

    def _decide(
        self,
        message: Message,
        history: Sequence[Message],
        is_instruction: bool,
        current: Optional[Message],
    ) -> PriorityDecision:
        try:
            return assign_priority(message, history, self._classifier, is_instruction, current)
        except Exception as e:
            self._classifier_failed("priority", message, e)
            return PriorityDecision(Tier.LOW, REASON_CLASSIFIER_UNAVAILABLE)

    def _propagate(self, message: Message, prior: Sequence[Message]) -> list[Message]:
        try:
            return propagate_closure(message, prior, self._classifier)
        except Exception as e:
            self._classifier_failed("closure", message, e)
            return []

    @staticmethod
    def _new_context(
        message: Message,
        decision: PriorityDecision,
        is_instruction: bool,
        previous: Sequence[Message],
    ) -> PriorityContext:
        return PriorityContext(
            tier=decision.tier,
            reason=decision.reason,
            is_current_instruction=is_instruction,
            file_references=extract_file_references(message.content),
            starts_new_topic=starts_new_topic(message, list(previous)),
        )

    def _promote(self, conv: ProjectConversation, message: Message) -> None:
        """Make *message* the current instruction, demoting any other holder."""
        now = time.time()
        for other in conv.messages.values():
            if other is not message and other.is_current_instruction:
                self._demote(other, now)
        context = message.priority_context
        context.tier = Tier.CRITICAL
        context.is_current_instruction = True
        conv.current_instruction_id = message.id

    @staticmethod
    def _demote(message: Message, now: float) -> None:
        context = message.priority_context
        context.tier = Tier.HIGH
        context.is_current_instruction = False
        context.reason = REASON_PREVIOUS_INSTRUCTION
        context.assigned_at = now
        logger.debug(f"Demoted previous instruction {message.id} to HIGH")

    def _normalize_current_instruction(self, conv: ProjectConversation) -> None:
        """Restore a single current instruction after a merge."""
        holders = [m for m in conv.messages.values() if m.is_current_instruction]
        keep = None
        if conv.current_instruction_id is not None:
            keep = conv.messages.get(conv.current_instruction_id)
        if keep is None or not keep.is_current_instruction:
            keep = max(holders, key=lambda m: m.created_at) if holders else None
        if keep is None:
            conv.current_instruction_id = None
            return
        self._promote(conv, keep)

    def _attach(self, conv: ProjectConversation, group: ConversationGroup, message: Message) -> None:
        """Move a message into a group and refresh members' related ids."""
        if message.group_id is not None and message.group_id != group.id:
            old = self._groups.get(message.group_id)
            if old is not None and message.id in old.message_ids:
                old.message_ids.remove(message.id)
                self._relate(conv, old)
        group.message_ids.append(message.id)
        message.group_id = group.id
        self._relate(conv, group)

    @staticmethod
    def _relate(conv: ProjectConversation, group: ConversationGroup) -> None:
        for message_id in group.message_ids:
            message = conv.messages.get(message_id)
            if message is None or message.priority_context is None:
                continue
            message.priority_context.related_message_ids = {
                other for other in group.message_ids if other != message_id
            }

    @staticmethod
    def _needs_reference_refresh(message: Message, changed: list[str]) -> bool:
        """File references follow settled content, never a partial stream."""
        if message.priority_context is None or message.is_generating:
            return False
        return "content" in changed or "is_generating" in changed

    @staticmethod
    def _refresh_file_references(message: Message) -> None:
        message.priority_context.file_references = extract_file_references(message.content)

    def _persist(self, method: str, *args) -> Optional[asyncio.Task]:
        """Fire-and-forget a persistence call on the running event loop."""
        if self._persistence is None:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No running event loop, skipping {method}")
            return None

        try:
            task = loop.create_task(getattr(self._persistence, method)(*args))
        except Exception as e:
            self.stats.persistence_failures += 1
            logger.warning(f"Persistence {method} could not start: {e}")
            return None
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        task.add_done_callback(self._persist_done)
        return task

    def _persist_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            self.stats.persistence_failures += 1
            logger.error(f"Background persistence failed: {exc}", exc_info=exc)
