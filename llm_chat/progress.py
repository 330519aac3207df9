"""Topic progress tracking.

Topics are read once from the conversation context document. The extraction
strategies are tried in order and the first that yields at least one topic
wins:

  1. explicit markers    [TOPIC: Name | kw1, kw2]
                         [TOPIC:id="x" name="Name" keywords="kw1,kw2"]
  2. markdown section    ## TRACKABLE_TOPICS, with "- name: / keywords:" pairs
                         or "- Name: kw1, kw2" lines
  3. HTML section        <h2>TRACKABLE_TOPICS</h2> followed by <li>/<p> items
  4. plain-text section  a TRACKABLE_TOPICS line followed by "name: ... keywords: ..."
  5. bold fallback       **Name** - short description

Coverage only ever grows through confirm_topic(), normally after the user has
answered the confirmation question affirmatively. Keywords are carried along
for the model's benefit; they never mark a topic as covered. The stored
percentage is max(computed, previous), so it cannot go down.
"""

from __future__ import annotations

import hashlib
import html
import logging
import re
import threading
from typing import TYPE_CHECKING, Any

from llm_chat.config import ChatConfig
from llm_chat.models import ProgressReport, Topic, TopicCoverage, utcnow

if TYPE_CHECKING:
    from llm_chat.protocol import EnvelopeProgress
    from llm_chat.storage import Storage

logger = logging.getLogger(__name__)

NO_TOPICS_MESSAGE = "No trackable topics defined in context. Use [TOPIC: Name | keywords] format."

SECTION_MARKER = "TRACKABLE_TOPICS"

_INLINE_RE = re.compile(r"\[TOPIC:\s*([^|\]]+?)\s*\|\s*([^\]]+)\]", re.IGNORECASE)
_ATTR_RE = re.compile(
    r'\[TOPIC:\s*id="([^"]+)"\s+name="([^"]+)"(?:\s+keywords="([^"]*)")?\s*\]',
    re.IGNORECASE,
)
_MD_HEADING_RE = re.compile(rf"^#{{1,3}}\s*{SECTION_MARKER}\s*:?\s*$", re.MULTILINE)
_MD_NEXT_HEADING_RE = re.compile(r"^#{1,3}\s", re.MULTILINE)
_HTML_SECTION_RE = re.compile(
    rf"<h([1-3])[^>]*>\s*{SECTION_MARKER}\s*</h\1>(.*?)(?=<h[1-3][^>]*>|$)",
    re.IGNORECASE | re.DOTALL,
)
_HTML_ITEM_RE = re.compile(r"<(li|p)[^>]*>(.*?)</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_PLAIN_MARKER_RE = re.compile(rf"^\s*{SECTION_MARKER}\s*:?\s*$", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*\s*[-–]\s*([^,\n]+)")

_NAME_RE = re.compile(r"name:\s*(.+?)(?:\s+keywords:\s*(.*))?$", re.IGNORECASE)
_KEYWORDS_RE = re.compile(r"keywords:\s*(.*)$", re.IGNORECASE)
_PAIR_RE = re.compile(r"([^:]+):\s*(.+)$")

_STOPWORDS = frozenset("""
a an and are as at be been but by can do does for from had has have how if in
into is it its more most no nor not of on only or other own same so some such
than that the their them then there these they this those through to too very
was we were what when where which while who why will with you your about also
""".split())


def topic_id_for(name: str) -> str:
    digest = hashlib.md5(name.strip().lower().encode("utf-8")).hexdigest()
    return f"topic_{digest[:8]}"


def make_topic(name: str, keywords: str | list[str], topic_id: str | None = None) -> Topic:
    """Build a Topic; the name is always one of its keywords."""
    name = name.strip().strip("\"'")
    if isinstance(keywords, str):
        keywords = keywords.strip().strip("[]").split(",")
    kws: dict[str, None] = {}
    for kw in [*keywords, name]:
        kw = kw.strip().strip("\"'").lower()
        if kw:
            kws.setdefault(kw, None)
    return Topic(id=topic_id or topic_id_for(name), title=name, keywords=tuple(kws))


def _dedupe(topics: list[Topic]) -> list[Topic]:
    seen: dict[str, Topic] = {}
    for t in topics:
        seen.setdefault(t.id, t)
    return list(seen.values())


# ---------------------------------------------------------------------------
# Extraction strategies
# ---------------------------------------------------------------------------

def _from_markers(document: str) -> list[Topic]:
    topics = [
        make_topic(name, kws or "", topic_id=f"topic_{tid.strip()}")
        for tid, name, kws in _ATTR_RE.findall(document)
    ]
    topics += [make_topic(name, kws) for name, kws in _INLINE_RE.findall(document)]
    return _dedupe(topics)


def _parse_section_lines(lines: list[str]) -> list[Topic]:
    """Parse "name:/keywords:" pairs or "Name: kw1, kw2" lines."""
    topics: list[Topic] = []
    current: list[str] | None = None

    def flush() -> None:
        nonlocal current
        if current and current[0].strip():
            topics.append(make_topic(current[0], current[1]))
        current = None

    for raw in lines:
        line = raw.strip().lstrip("-*•").strip()
        if not line:
            continue
        m = _NAME_RE.match(line)
        if m:
            flush()
            current = [m.group(1), m.group(2) or ""]
            continue
        m = _KEYWORDS_RE.match(line)
        if m:
            if current is not None:
                current[1] = m.group(1)
            continue
        m = _PAIR_RE.match(line)
        if m:
            flush()
            topics.append(make_topic(m.group(1), m.group(2)))
    flush()
    return _dedupe(topics)


def _from_markdown(document: str) -> list[Topic]:
    m = _MD_HEADING_RE.search(document)
    if not m:
        return []
    body = document[m.end():]
    nxt = _MD_NEXT_HEADING_RE.search(body)
    if nxt:
        body = body[:nxt.start()]
    return _parse_section_lines(body.splitlines())


def _from_html(document: str) -> list[Topic]:
    m = _HTML_SECTION_RE.search(document)
    if not m:
        return []
    body = m.group(2)
    items = [html.unescape(_TAG_RE.sub("", text)) for _, text in _HTML_ITEM_RE.findall(body)]
    if not items:
        items = html.unescape(_TAG_RE.sub("\n", body)).splitlines()
    return _parse_section_lines(items)


def _from_plain_text(document: str) -> list[Topic]:
    m = _PLAIN_MARKER_RE.search(document)
    if not m:
        return []
    lines: list[str] = []
    for line in document[m.end():].splitlines():
        stripped = line.strip()
        # another all-caps marker line ends the section
        if stripped and stripped.upper() == stripped and stripped.rstrip(":").replace("_", "").isalpha():
            break
        lines.append(line)
    return _parse_section_lines(lines)


def _description_keywords(text: str, limit: int = 5) -> list[str]:
    words = re.findall(r"[^\W\d_]+", text.lower())
    picked: list[str] = []
    for w in words:
        if len(w) > 3 and w not in _STOPWORDS and w not in picked:
            picked.append(w)
        if len(picked) == limit:
            break
    return picked


def _from_bold(document: str) -> list[Topic]:
    return _dedupe([
        make_topic(name, _description_keywords(desc))
        for name, desc in _BOLD_RE.findall(document)
    ])


_STRATEGIES = [
    ("explicit_markers", _from_markers),
    ("markdown_section", _from_markdown),
    ("html_section", _from_html),
    ("plain_text_section", _from_plain_text),
    ("bold_fallback", _from_bold),
]


def extract_topics(document: str) -> list[Topic]:
    return explain_extraction(document)["topics"]


def explain_extraction(document: str) -> dict[str, Any]:
    """Report which strategy matched and what it found."""
    document = document or ""
    result: dict[str, Any] = {
        "method": None,
        "topics": [],
        "document_length": len(document),
        "has_section_marker": SECTION_MARKER in document,
        "has_topic_markers": "[TOPIC:" in document.upper(),
    }
    for method, strategy in _STRATEGIES:
        topics = strategy(document)
        if topics:
            result["method"] = method
            result["topics"] = topics
            break
    return result


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class TopicProgressTracker:
    def __init__(self, config: ChatConfig, storage: "Storage") -> None:
        self._config = config
        self._storage = storage
        self._topics = extract_topics(config.context_document)
        self._by_id = {t.id: t for t in self._topics}
        self._lock = threading.Lock()
        if config.progress_enabled and not self._topics:
            logger.warning("progress tracking enabled but no topics found in context document")

    @property
    def topics(self) -> list[Topic]:
        return list(self._topics)

    @property
    def enabled(self) -> bool:
        return self._config.progress_enabled and bool(self._topics)

    def _coverage(self, stored: dict[str, TopicCoverage]) -> dict[str, TopicCoverage]:
        coverage = {t.id: TopicCoverage(id=t.id, title=t.title) for t in self._topics}
        for tid, cov in stored.items():
            if tid in coverage:
                coverage[tid] = cov
        return coverage

    def _report(self, percentage: float, coverage: dict[str, TopicCoverage]) -> ProgressReport:
        covered = sum(1 for c in coverage.values() if c.is_covered)
        return ProgressReport(
            percentage=percentage,
            topics_total=len(self._topics),
            topics_covered=covered,
            is_complete=percentage >= 100,
            topic_coverage=list(coverage.values()),
        )

    def get_progress(self, conversation_id: str) -> ProgressReport:
        if not self._topics:
            return ProgressReport(
                percentage=0, topics_total=0, topics_covered=0,
                is_complete=False, message=NO_TOPICS_MESSAGE,
            )
        record = self._storage.get_progress(conversation_id)
        return self._report(record.percentage, self._coverage(record.topic_coverage))

    def confirm_topic(self, conversation_id: str, topic_id: str) -> ProgressReport:
        """Mark one topic as understood. Repeating it changes nothing."""
        if topic_id not in self._by_id:
            raise ValueError(f"Unknown topic: {topic_id}")

        with self._lock:
            record = self._storage.get_progress(conversation_id)
            coverage = self._coverage(record.topic_coverage)
            cov = coverage[topic_id]
            if not cov.is_covered:
                coverage[topic_id] = cov.model_copy(update={
                    "is_covered": True,
                    "coverage": 100,
                    "depth": max(1, cov.depth + 1),
                    "confirmed_at": utcnow(),
                })

            covered = sum(1 for c in coverage.values() if c.is_covered)
            computed = round(covered / len(self._topics) * 100, 1)
            percentage = max(computed, record.percentage)
            self._storage.update_progress(conversation_id, percentage, coverage)

        logger.info("topic %s confirmed conversation=%s progress=%.1f%%",
                    topic_id, conversation_id, percentage)
        return self._report(percentage, coverage)

    def apply_envelope_progress(
        self, conversation_id: str, progress: "EnvelopeProgress | None"
    ) -> ProgressReport | None:
        """Confirm the known topic ids the model reported as covered."""
        if progress is None or not self._topics:
            return None
        report = None
        for tid in progress.topics_covered:
            if tid not in self._by_id:
                logger.info("ignoring unknown topic id %r reported by model", tid)
                continue
            report = self.confirm_topic(conversation_id, tid)
        return report
