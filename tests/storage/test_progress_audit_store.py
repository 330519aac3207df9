"""Tests for stored progress and the append-only audit log."""

from llm_chat.models import AuditEntry, TopicCoverage


def test_progress_defaults(storage):
    record = storage.get_progress("c1")
    assert record.percentage == 0
    assert record.topic_coverage == {}


def test_progress_never_decreases(storage):
    storage.update_progress("c1", 50, {})
    record = storage.update_progress("c1", 20, {})
    assert record.percentage == 50
    assert storage.get_progress("c1").percentage == 50


def test_progress_coverage_roundtrip(storage):
    cov = {"topic_a": TopicCoverage(id="topic_a", title="A", is_covered=True, coverage=100, depth=1)}
    storage.update_progress("c1", 100, cov)
    assert storage.get_progress("c1").topic_coverage["topic_a"].is_covered


def test_audit_appends_in_order(storage):
    storage.append_audit(AuditEntry(event="keyword_detected", user_id="u1", conversation_id="c1"))
    storage.append_audit(AuditEntry(event="conversation_blocked", user_id="u1", conversation_id="c1"))
    storage.append_audit(AuditEntry(event="keyword_detected", user_id="u2", conversation_id="c2"))
    assert [e.event for e in storage.get_audit("c1")] == ["keyword_detected", "conversation_blocked"]
    assert len(storage.get_audit()) == 3
