"""Tests for the conversation data model."""

import pytest

from chatrank.models import (
    AuthorKind,
    DomainContext,
    Message,
    MessagePatch,
    PriorityContext,
    Tier,
    apply_patch,
    extract_file_references,
    new_message_id,
    starts_new_topic,
)


# ---------------------------------------------------------------------------
# TestMessage
# ---------------------------------------------------------------------------

class TestMessage:
    def test_create_defaults(self):
        message = Message.create(AuthorKind.USER, "Hello")
        assert message.id.startswith("msg_")
        assert message.persisted is False
        assert message.is_generating is False
        assert message.domain is None
        assert message.priority_context is None

    def test_id_is_immutable(self):
        message = Message.create(AuthorKind.USER, "Hello", id="m1")
        with pytest.raises(AttributeError):
            message.id = "m2"
        assert message.id == "m1"

    def test_tier_defaults_to_low(self):
        message = Message.create(AuthorKind.ASSISTANT, "Hi")
        assert message.tier is Tier.LOW
        message.priority_context = PriorityContext(tier=Tier.HIGH, reason="test")
        assert message.tier is Tier.HIGH

    def test_ids_are_unique(self):
        assert new_message_id() != new_message_id()

    def test_author_roles(self):
        assert AuthorKind.USER.role == "user"
        assert AuthorKind.ASSISTANT.role == "assistant"
        assert AuthorKind.SYSTEM.role == "system"

    def test_tiers_sort_by_priority(self):
        assert sorted([Tier.LOW, Tier.CRITICAL, Tier.MEDIUM]) == [Tier.CRITICAL, Tier.MEDIUM, Tier.LOW]


# ---------------------------------------------------------------------------
# TestDomainContext
# ---------------------------------------------------------------------------

class TestDomainContext:
    def test_mark_resolved_once(self):
        context = DomainContext(domain="auth")
        assert context.mark_resolved(at=5.0) is True
        assert context.resolved is True
        assert context.resolved_at == 5.0

        # Second call keeps the original timestamp
        assert context.mark_resolved(at=9.0) is False
        assert context.resolved_at == 5.0


# ---------------------------------------------------------------------------
# TestMessagePatch
# ---------------------------------------------------------------------------

class TestMessagePatch:
    def test_streaming_only(self):
        assert MessagePatch(content="x").is_streaming_only
        assert MessagePatch(content="x", is_generating=False).is_streaming_only
        assert not MessagePatch(content="x", persisted=True).is_streaming_only
        assert not MessagePatch(created_at=1.0).is_streaming_only

    def test_apply_patch_reports_changes(self):
        message = Message.create(AuthorKind.ASSISTANT, "Hel", created_at=1.0)
        message.is_generating = True

        changed = apply_patch(message, MessagePatch(content="Hello", is_generating=False))
        assert sorted(changed) == ["content", "is_generating"]
        assert message.content == "Hello"
        assert message.is_generating is False

    def test_apply_patch_skips_unchanged(self):
        message = Message.create(AuthorKind.ASSISTANT, "Same", created_at=1.0)
        assert apply_patch(message, MessagePatch(content="Same", created_at=1.0)) == []

    def test_patch_is_frozen(self):
        patch = MessagePatch(content="x")
        with pytest.raises(AttributeError):
            patch.content = "y"


# ---------------------------------------------------------------------------
# TestFileReferences
# ---------------------------------------------------------------------------

class TestFileReferences:
    def test_extracts_file_names(self):
        refs = extract_file_references("Update App.tsx and styles.css please")
        assert refs == {"App.tsx", "styles.css"}

    def test_extracts_paths(self):
        refs = extract_file_references("See src/lib/api.ts and ./public/index.html")
        assert "src/lib/api.ts" in refs
        assert "./public/index.html" in refs

    def test_json_not_split(self):
        refs = extract_file_references("edit package.json")
        assert "package.json" in refs
        assert "package.js" not in refs

    def test_no_references(self):
        assert extract_file_references("make the button blue") == set()


# ---------------------------------------------------------------------------
# TestTopicContinuity
# ---------------------------------------------------------------------------

class TestTopicContinuity:
    def test_first_message_starts_topic(self):
        message = Message.create(AuthorKind.USER, "Build a login page")
        assert starts_new_topic(message, []) is True

    def test_shared_keywords_continue_topic(self):
        previous = [Message.create(AuthorKind.USER, "Build the login page with email field")]
        message = Message.create(AuthorKind.USER, "Make the login page email field required")
        assert starts_new_topic(message, previous) is False

    def test_unrelated_message_starts_topic(self):
        previous = [Message.create(AuthorKind.USER, "Build the login page with email field")]
        message = Message.create(AuthorKind.USER, "Change chart colors everywhere")
        assert starts_new_topic(message, previous) is True

    def test_only_last_three_considered(self):
        previous = [
            Message.create(AuthorKind.USER, "Build the login page with email field"),
            Message.create(AuthorKind.USER, "alpha"),
            Message.create(AuthorKind.USER, "beta"),
            Message.create(AuthorKind.USER, "gamma"),
        ]
        message = Message.create(AuthorKind.USER, "Make the login page email field required")
        assert starts_new_topic(message, previous) is True
