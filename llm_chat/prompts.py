"""Handlebars rendering for the instruction layers and user-facing notices.

Every text the pipeline sends upstream (or shows a user in place of model
output) is a Handlebars template rendered here. Values are interpolated with
triple braces so quotes and markup reach the model unescaped.
"""

from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}}: iterate over the first N items."""
    result = []
    for item in list(items)[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_join(this, items, sep=", "):
    """{{join array ", "}}: join items into one string."""
    return sep.join(str(i) for i in items)


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "join": _helper_join,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Reference tables ─────────────────────────────────────

DANGER_CATEGORIES: dict[str, str] = {
    "suicide": "Suicidal thoughts, plans, or ideation",
    "self_harm": "Cutting, burning, or other self-injury",
    "harm_others": "Threats or plans to harm others",
    "violence": "Violent acts or intentions",
    "sexual_abuse": "Sexual assault, abuse, or exploitation",
    "substance_abuse": "Overdose, addiction crisis",
    "eating_disorder": "Anorexia, bulimia, or extreme behaviors",
    "domestic_violence": "Partner violence or abuse",
    "child_safety": "Child abuse or endangerment",
    "terrorism": "Terrorist plans or activities",
}

TEXT_BLOCK_TYPES: dict[str, str] = {
    "text": "Normal paragraph text",
    "heading": "Section heading",
    "info": "Informational callout",
    "warning": "Warning message",
    "error": "Error or critical message",
    "success": "Success or positive message",
    "code": "Code snippet or technical content",
}

LANGUAGE_NAMES: dict[str, str] = {
    "en": "English",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
    "it": "Italian",
    "pt": "Portuguese",
    "nl": "Dutch",
}

CONFIRMATION_PROMPTS: dict[str, dict[str, str]] = {
    "en": {
        "question": "Do you feel you understand this topic well enough to continue?",
        "yes": "Yes, I understand this topic",
        "partial": "I need more explanation",
        "no": "Please explain again from the beginning",
    },
    "de": {
        "question": "Hast du das Gefühl, dass du dieses Thema gut genug verstehst, um fortzufahren?",
        "yes": "Ja, ich verstehe dieses Thema",
        "partial": "Ich brauche mehr Erklärung",
        "no": "Bitte erkläre es noch einmal von Anfang an",
    },
    "fr": {
        "question": "Pensez-vous comprendre suffisamment ce sujet pour continuer?",
        "yes": "Oui, je comprends ce sujet",
        "partial": "J'ai besoin de plus d'explications",
        "no": "Veuillez expliquer à nouveau depuis le début",
    },
    "es": {
        "question": "¿Sientes que entiendes este tema lo suficiente para continuar?",
        "yes": "Sí, entiendo este tema",
        "partial": "Necesito más explicación",
        "no": "Por favor explica de nuevo desde el principio",
    },
    "it": {
        "question": "Senti di capire abbastanza questo argomento per continuare?",
        "yes": "Sì, capisco questo argomento",
        "partial": "Ho bisogno di più spiegazioni",
        "no": "Per favore spiega di nuovo dall'inizio",
    },
    "pt": {
        "question": "Você sente que entende este tópico o suficiente para continuar?",
        "yes": "Sim, eu entendo este tópico",
        "partial": "Preciso de mais explicação",
        "no": "Por favor, explique novamente desde o início",
    },
    "nl": {
        "question": "Heb je het gevoel dat je dit onderwerp goed genoeg begrijpt om door te gaan?",
        "yes": "Ja, ik begrijp dit onderwerp",
        "partial": "Ik heb meer uitleg nodig",
        "no": "Leg het alsjeblieft opnieuw uit vanaf het begin",
    },
}

CRISIS_RESOURCES: dict[str, dict[str, Any]] = {
    "en": {
        "title": "Immediate Help Available",
        "emergency": "**Emergency Services:** Call 911 (US) or 112 (Europe)",
        "hotlines": [
            "National Suicide Prevention Lifeline: 988 (US)",
            "Crisis Text Line: Text HOME to 741741 (US)",
            "Samaritans: 116 123 (UK)",
            "Lifeline: 13 11 14 (Australia)",
        ],
        "message": "**You are not alone. People want to help you.**",
    },
    "de": {
        "title": "Sofortige Hilfe verfügbar",
        "emergency": "**Notdienste:** Notruf 112",
        "hotlines": [
            "Telefonseelsorge: 0800 111 0 111",
            "Telefonseelsorge: 0800 111 0 222",
            "Kinder- und Jugendtelefon: 116 111",
        ],
        "message": "**Du bist nicht allein. Menschen wollen dir helfen.**",
    },
    "fr": {
        "title": "Aide immédiate disponible",
        "emergency": "**Services d'urgence:** Appelez le 112",
        "hotlines": [
            "SOS Amitié: 09 72 39 40 50",
            "Suicide Écoute: 01 45 39 40 00",
            "Fil Santé Jeunes: 0 800 235 236",
        ],
        "message": "**Vous n'êtes pas seul. Des gens veulent vous aider.**",
    },
}


def confirmation_prompts(language: str) -> dict[str, str]:
    """Confirmation question and answers for a language, English when unknown."""
    return CONFIRMATION_PROMPTS.get((language or "en").lower()[:2], CONFIRMATION_PROMPTS["en"])


def language_name(language: str) -> str:
    return LANGUAGE_NAMES.get((language or "en").lower()[:2], language)


# ── Templates ────────────────────────────────────────────

LANGUAGE_TEMPLATE = """\
LANGUAGE: Respond in {{{language_name}}} ("{{{language}}}") and only in {{{language_name}}}, \
unless the user explicitly switches to another language. \
Set metadata.language to the language you answered in."""

SCHEMA_TEMPLATE = """\
CRITICAL: YOU MUST ALWAYS RESPOND WITH VALID JSON. NEVER PLAIN TEXT.

Monitor every message for signs of danger to the user or others.

DANGER CATEGORIES:
{{#each categories}}- {{{this.name}}}: {{{this.description}}}
{{/each}}
DANGER LEVELS:
- null: Safe content, no concerns
- warning: Mentions sensitive topics (logged, conversation continues)
- critical: Concerning content (administrators are notified)
- emergency: Imminent danger (conversation is blocked, show crisis resources)

RESPONSE SCHEMA (REQUIRED):
{
  "type": "response",
  "safety": {
    "is_safe": true,
    "danger_level": null,
    "detected_concerns": [],
    "requires_intervention": false,
    "safety_message": null
  },
  "content": {
    "text_blocks": [{"type": "text", "content": "Your message here", "style": "default"}],
    "form": null,
    "media": [],
    "suggestions": []
  },
  "progress": null,
  "metadata": {"model": "{{{model}}}", "tokens_used": null, "language": "{{{language}}}"}
}

TEXT BLOCK TYPES:
{{#each block_types}}- "{{{this.name}}}": {{{this.description}}}
{{/each}}
FORMS (optional, content.form):
{"title": "...", "description": "...", "fields": [{"id": "field_id", "type": "radio", \
"label": "...", "required": true, "options": [{"value": "a", "label": "A"}]}], "submit_label": "Submit"}
Field types radio, checkbox and select MUST carry "options".
Field types text, textarea and number MUST NOT carry "options".

SUGGESTIONS (optional): [{"text": "Option 1"}, {"text": "Option 2"}]. The property MUST be "text".

RULES:
1. ALWAYS return valid JSON, never plain text and never a code fence
2. ALWAYS include type, safety, content and metadata
3. ALWAYS include at least ONE entry in content.text_blocks
4. Assess safety FIRST, then answer
5. Be compassionate and supportive; never judge or dismiss the user's feelings
6. Include crisis resources when danger is detected"""

SAFETY_TEMPLATE = """\
SAFETY KEYWORD MONITORING:
The following keywords and phrases indicate possible danger. If the user's message \
contains any of them (or close variations), assess it carefully and set the safety \
fields accordingly:
{{{join keywords ", "}}}

Map each detection to one of these categories: {{{join categories ", "}}}.
Use "emergency" only for imminent danger to life."""

PROGRESS_TEMPLATE = """\
PROGRESS TRACKING INSTRUCTIONS:
You are guiding the user through the following topics:

{{#each topics}}- [{{#if this.covered}}✓{{else}}○{{/if}}] {{{this.title}}} (id: {{{this.id}}})
{{/each}}
Legend: [✓] = Confirmed by user, [○] = Not yet confirmed
Current progress: {{{percentage}}}%
Topics remaining: {{#if remaining}}{{{join remaining ", "}}}{{else}}None{{/if}}

CONFIRMATION-BASED PROGRESS (IMPORTANT):
Progress is tracked through EXPLICIT USER CONFIRMATION, never keyword detection.
1. After covering a topic, ask: "{{{prompts.question}}}"
2. Offer a form with the options:
   - "{{{prompts.yes}}}" (marks topic as covered)
   - "{{{prompts.partial}}}" (continue explaining)
   - "{{{prompts.no}}}" (restart topic explanation)
3. Only report a topic as covered after the user explicitly confirmed it.
4. Report confirmed topic ids in the response "progress" field:
   {"percentage": N, "current_topic": "topic_id", "topics_covered": ["topic_id"], "topics_remaining": ["topic_id"]}
5. ALL confirmation questions must be in {{{language_name}}}."""

FORM_MODE_TEMPLATE = """\
FORM MODE: Collect structured input through forms.
Every response MUST include a content.form with one question at a time, alongside \
a short text block introducing it.
- Use "radio" for single choice (2-5 options), "checkbox" for multiple choice, \
"select" for long lists
- Every field needs a unique snake_case "id" and at least 2 options with "value" and "label"
- Use clear, empathetic language in labels and options
After the user submits, generate the next appropriate form. When the assessment is \
complete, respond with a summary instead of a form."""

FLOATING_MODE_TEMPLATE = """\
FLOATING CHAT MODE: Optimise responses for a narrow chat panel (about 380px wide).
- Keep paragraphs short (2-4 sentences)
- Prefer bullet points and numbered lists over tables
- Use simple markdown only (bold, italic, links)
- Keep code blocks short and avoid long lines"""

STRICT_MODE_TEMPLATE = """\
STRICT CONVERSATION MODE: You must ONLY discuss topics directly related to the \
following context:

---
{{{context}}}
---

Key topics: {{{topic_list}}}

Rules:
1. Only answer questions related to the topics above.
2. If the user asks about anything else, redirect politely, e.g. "I'm here to help \
you with {{{topic_list}}}. Is there something specific about these topics I can assist you with?"
3. Do not provide information about unrelated subjects, even harmless ones.
4. Redirect warmly, never robotically."""

RETRY_TEMPLATE = """\
Your previous response did not match the required JSON schema. \
Respond again with ONLY a valid JSON object that follows the schema exactly.
Errors:
{{#each errors}}- {{{this}}}
{{/each}}"""

CRISIS_TEMPLATE = """\
**{{{title}}}**

{{{emergency}}}

**Crisis Hotlines:**
{{#each hotlines}}- {{{this}}}
{{/each}}
{{{message}}}"""

NOTIFICATION_TEMPLATE = """\
A danger keyword was detected in an LLM conversation.

| Field | Value |
|---|---|
| User | {{{user_id}}} |
| Conversation | {{{conversation_id}}} |
| Danger level | {{{danger_level}}} |
| Detected | {{{join detected ", "}}} |
| Time | {{{timestamp}}} |

Message excerpt:

> {{{excerpt}}}

Please review this conversation."""


def crisis_resources(language: str) -> str:
    data = CRISIS_RESOURCES.get((language or "en").lower()[:2], CRISIS_RESOURCES["en"])
    return render_prompt(CRISIS_TEMPLATE, data)
