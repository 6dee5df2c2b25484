"""Topic-closure resolution propagation.

When a user message closes a topic ("ok that works, now let's..."), the
recent messages about that topic are marked resolved so they can be
down-weighted later. Resolution is written onto the existing DomainContext
object so every holder of the message sees it immediately.
"""

import logging
import time
from typing import Optional, Sequence

from .classifier import Classifier, ensure_domain
from .models import DomainContext, Message

logger = logging.getLogger(__name__)

CLOSURE_WINDOW = 10


def is_related(candidate: DomainContext, closing: DomainContext) -> bool:
    """Whether a candidate belongs to the topic a closing message ends.

    Related means shared feature tags, or both feature-less in the same
    domain. Same domain alone is not enough.
    """
    if set(candidate.feature_tags) & set(closing.feature_tags):
        return True
    both_generic = not candidate.feature_tags and not closing.feature_tags
    return both_generic and candidate.domain == closing.domain


def propagate_closure(
    new_message: Message,
    prior_history: Sequence[Message],
    classifier: Classifier,
    now: Optional[float] = None,
) -> list[Message]:
    """Resolve recent messages related to the topic *new_message* closes.

    Args:
        new_message: The incoming message.
        prior_history: Time-ordered messages before it.
        classifier: Supplies the closure signal and domain contexts.
        now: Resolution timestamp (defaults to the current time).

    Returns:
        Messages newly marked resolved, most recent first.
    """
    if not prior_history:
        return []
    if not classifier.detects_closure(new_message, prior_history):
        return []

    closing = ensure_domain(new_message, classifier)
    resolved_at = now if now is not None else time.time()
    logger.debug(
        f"Topic closure in {new_message.id} (domain={closing.domain}, "
        f"features={closing.feature_tags})"
    )

    newly_resolved = []
    for candidate in reversed(prior_history[-CLOSURE_WINDOW:]):
        context = ensure_domain(candidate, classifier)
        if context.resolved:
            continue
        if is_related(context, closing) and context.mark_resolved(resolved_at):
            newly_resolved.append(candidate)
            logger.debug(
                f"Auto-resolved {candidate.id} (domain={context.domain}, "
                f"features={context.feature_tags})"
            )

    if newly_resolved:
        logger.info(f"Closure {new_message.id} resolved {len(newly_resolved)} related messages")
    return newly_resolved
