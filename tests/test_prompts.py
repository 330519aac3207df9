"""Tests for Handlebars prompt rendering and the language-keyed texts."""

import pytest

from llm_chat.prompts import (
    CONFIRMATION_PROMPTS,
    PromptError,
    confirmation_prompts,
    crisis_resources,
    render_prompt,
)


# ── render_prompt ────────────────────────────────────────────


def test_render_simple_variable():
    assert render_prompt("Hello {{name}}!", {"name": "World"}) == "Hello World!"


def test_render_each_loop():
    tpl = "{{#each items}}{{this}} {{/each}}"
    assert render_prompt(tpl, {"items": ["a", "b", "c"]}) == "a b c "


def test_triple_stash_does_not_escape():
    assert render_prompt('{{{q}}}', {"q": 'say "yes" & go'}) == 'say "yes" & go'


def test_join_helper():
    assert render_prompt('{{{join items ", "}}}', {"items": ["x", "y"]}) == "x, y"


def test_take_helper():
    tpl = "{{#take items 2}}{{this}};{{/take}}"
    assert render_prompt(tpl, {"items": ["a", "b", "c"]}) == "a;b;"


def test_render_missing_variable():
    assert render_prompt("Hello {{name}}!", {}) == "Hello !"


def test_render_invalid_template():
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


# ── language-keyed texts ─────────────────────────────────────


@pytest.mark.parametrize("lang", ["en", "de", "fr", "es", "it", "pt", "nl"])
def test_confirmation_prompts_have_all_keys(lang):
    assert set(confirmation_prompts(lang)) == {"question", "yes", "partial", "no"}


def test_confirmation_prompts_fall_back_to_english():
    assert confirmation_prompts("xx") == CONFIRMATION_PROMPTS["en"]
    assert confirmation_prompts("") == CONFIRMATION_PROMPTS["en"]


def test_confirmation_prompts_use_language_prefix():
    assert confirmation_prompts("de-CH") == CONFIRMATION_PROMPTS["de"]


def test_crisis_resources_english():
    text = crisis_resources("en")
    assert "988" in text
    assert "- Samaritans: 116 123 (UK)" in text


def test_crisis_resources_german():
    assert "Telefonseelsorge" in crisis_resources("de")


def test_crisis_resources_fallback():
    assert crisis_resources("ja") == crisis_resources("en")
