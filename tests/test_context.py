"""Tests for instruction stack assembly."""

from llm_chat.context import ContextOptions, assemble, base_layers, key_topics
from llm_chat.progress import make_topic

TOPICS = (make_topic("Sleep", "sleep"), make_topic("Stress", "stress"), make_topic("Diet", "food"),
          make_topic("Exercise", "sport"), make_topic("Work", "job"))


def _sources(layers):
    return [layer.source for layer in layers]


def test_minimal_stack():
    layers = assemble([], ContextOptions(model="m"))
    assert _sources(layers) == ["language", "schema"]
    assert all(layer.role == "system" for layer in layers)


def test_full_order():
    opts = ContextOptions(
        model="m",
        safety_enabled=True, safety_keywords=("overdose",),
        progress_enabled=True, topics=TOPICS[:2],
        form_mode=True,
    )
    layers = assemble(base_layers("You are a wellbeing coach."), opts)
    assert _sources(layers) == ["language", "schema", "safety", "progress", "mode", "base"]
    assert layers[-1].content == "You are a wellbeing coach."


def test_assemble_is_pure():
    opts = ContextOptions(model="m", safety_enabled=True, safety_keywords=("a",))
    base = base_layers("base")
    assert assemble(base, opts) == assemble(base, opts)
    assert _sources(base) == ["base"]


def test_language_pin():
    (lang, *_) = assemble([], ContextOptions(model="m", language="fr"))
    assert "French" in lang.content
    assert '"fr"' in lang.content


def test_schema_layer_names_model():
    layers = assemble([], ContextOptions(model="qwen-test"))
    assert "qwen-test" in layers[1].content
    assert "JSON" in layers[1].content


def test_safety_needs_keywords():
    layers = assemble([], ContextOptions(model="m", safety_enabled=True))
    assert "safety" not in _sources(layers)


def test_safety_keywords_listed():
    opts = ContextOptions(model="m", safety_enabled=True, safety_keywords=("overdose", "harm myself"))
    safety = [layer for layer in assemble([], opts) if layer.source == "safety"][0]
    assert "overdose" in safety.content
    assert "harm myself" in safety.content


def test_progress_marks_covered_and_limits_remaining():
    opts = ContextOptions(
        model="m", progress_enabled=True, topics=TOPICS,
        covered_topic_ids=frozenset({TOPICS[0].id}), percentage=20,
    )
    progress = [layer for layer in assemble([], opts) if layer.source == "progress"][0]
    assert f"[✓] Sleep (id: {TOPICS[0].id})" in progress.content
    assert f"[○] Stress (id: {TOPICS[1].id})" in progress.content
    assert "Current progress: 20%" in progress.content
    assert "Topics remaining: Stress, Diet, Exercise" in progress.content


def test_progress_needs_topics():
    layers = assemble([], ContextOptions(model="m", progress_enabled=True))
    assert "progress" not in _sources(layers)


def test_progress_prompts_localised():
    opts = ContextOptions(model="m", language="de", progress_enabled=True, topics=TOPICS[:1])
    progress = [layer for layer in assemble([], opts) if layer.source == "progress"][0]
    assert "German" in progress.content


def test_only_one_mode_overlay():
    opts = ContextOptions(
        model="m", strict_mode=True, floating_mode=True, form_mode=True,
        context_document="## Anxiety\nBreathing exercises.",
    )
    modes = [layer for layer in assemble([], opts) if layer.source == "mode"]
    assert len(modes) == 1
    assert "Breathing exercises." in modes[0].content


def test_strict_without_document_falls_through():
    strict_only = assemble([], ContextOptions(model="m", strict_mode=True))
    assert "mode" not in _sources(strict_only)
    floating = assemble([], ContextOptions(model="m", strict_mode=True, floating_mode=True))
    form = assemble([], ContextOptions(model="m", form_mode=True))
    assert [layer.content for layer in floating if layer.source == "mode"] != [
        layer.content for layer in form if layer.source == "mode"
    ]


def test_base_layers_empty_document():
    assert base_layers("   ") == []


def test_key_topics_from_topics():
    assert key_topics("", TOPICS) == ["Sleep", "Stress", "Diet", "Exercise", "Work"]


def test_key_topics_from_document():
    doc = "# Coping With Panic\nWe talk about anxiety and sleep."
    found = key_topics(doc)
    assert "anxiety" in found
    assert "sleep" in found
    assert "coping with panic" in found
