"""Reload reconciliation and background persistence hooks.

Local state is authoritative for the active session. Persistence runs
fire-and-forget; on reload the backend copy is merged back in.
"""

import logging
from typing import Protocol, Sequence, runtime_checkable

from .models import Message

logger = logging.getLogger(__name__)


@runtime_checkable
class PersistenceSink(Protocol):
    """Durable storage supplied by the host product. All calls are async."""

    async def save_message(self, project_id: str, message: Message) -> None:
        ...

    async def update_message(self, project_id: str, message: Message) -> None:
        ...

    async def clear_project(self, project_id: str) -> None:
        ...


def _carry_local_state(local: Message, remote: Message) -> None:
    """Keep client-only state the backend copy does not carry.

    The backend does not store classifier output or priority context, and a
    local resolution must never be reverted by a stale remote copy.
    """
    if local.domain is not None:
        if remote.domain is None:
            remote.domain = local.domain
        elif local.domain.resolved:
            remote.domain.mark_resolved(local.domain.resolved_at)
    if remote.priority_context is None:
        remote.priority_context = local.priority_context
    if remote.group_id is None:
        remote.group_id = local.group_id


def merge_remote(local: Sequence[Message], remote: Sequence[Message]) -> list[Message]:
    """Merge backend messages into the local conversation.

    Remote copies replace local ones sharing an id. Every local message the
    response does not contain is kept, whether or not it was saved before:
    messages are only ever removed by clearing the whole project. The result
    is sorted by ``created_at``, which is authoritative for remote copies.

    Args:
        local: Current local messages.
        remote: Messages loaded from the backend.

    Returns:
        Merged, time-ordered message list.
    """
    local_by_id = {m.id: m for m in local}
    merged: dict[str, Message] = {}

    for message in remote:
        previous = local_by_id.get(message.id)
        if previous is not None and previous is not message:
            _carry_local_state(previous, message)
        message.persisted = True
        merged[message.id] = message

    kept_local = 0
    for message in local:
        if message.id in merged:
            continue
        merged[message.id] = message
        kept_local += 1

    logger.debug(f"Merged {len(remote)} remote + {kept_local} local-only messages")
    return sorted(merged.values(), key=lambda m: m.created_at)
