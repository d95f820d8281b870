"""Text normalization and fact extraction.

Two families of pure helpers live here:

- **Cleaning**: turn noisy extracted text (deck fragments, rich-text
  leftovers, injected web-search scaffolding) into short, clean sentences.
- **Extraction**: pull monetary facts (raise amount, committed amount, TAM)
  out of free text.  Every regex cascade is expressed as an ordered list of
  :class:`CandidatePattern` plus :class:`ContextRule` weights and resolved by
  :func:`pick_best_candidate`, so the ranking lives in one place.

Nothing in this module raises on missing or non-string input; every entry
point coerces with :func:`diligence.utils.as_text` first and returns ``""`` /
``None`` when there is nothing to return.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from lxml import etree
from lxml import html as lxml_html

from diligence.schemas import DiligenceDocument, DiligenceScore
from diligence.utils import as_text

# ---------------------------------------------------------------------------
# Placeholder / sentinel values
# ---------------------------------------------------------------------------

_PLACEHOLDER_EXACT_RE = re.compile(r"^(?:unknown|n/a|na|none|null)$", re.I)
_PLACEHOLDER_PHRASE_RE = re.compile(r"not\s+(?:specified|disclosed|available)", re.I)
_COMPACT_PLACEHOLDERS = frozenset({
    "unknown", "na", "n/a", "notavailable", "notprovided",
    "notdisclosed", "notspecified", "none",
})


def is_placeholder_value(value: Any) -> bool:
    """True for empty text and for sentinel values such as ``unknown`` or ``not disclosed``."""
    text = as_text(value).strip()
    if not text:
        return True
    return bool(_PLACEHOLDER_EXACT_RE.match(text) or _PLACEHOLDER_PHRASE_RE.search(text))


def is_placeholder_metric_value(value: Any) -> bool:
    """Stricter variant for metric cells, e.g. ``"N/A"``, ``"not-provided"``, ``"$ unknown"``."""
    if is_placeholder_value(value):
        return True
    compact = re.sub(r"[\s$:_-]", "", as_text(value).strip().lower())
    return compact in _COMPACT_PLACEHOLDERS


def _normalize_candidate(value: Any) -> str:
    return "" if is_placeholder_value(value) else as_text(value).strip()


def normalize_funding_candidate(value: Any) -> str:
    return _normalize_candidate(value)


def normalize_tam_candidate(value: Any) -> str:
    return _normalize_candidate(value)


def normalize_committed_candidate(value: Any) -> str:
    return _normalize_candidate(value)


# ---------------------------------------------------------------------------
# Generic candidate ranking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CandidatePattern:
    """A regex whose group 1 is the value to extract."""
    pattern: re.Pattern[str]
    base_score: int = 0


@dataclass(frozen=True)
class ContextRule:
    """Adds *weight* to a candidate whose matched context hits *pattern*."""
    pattern: re.Pattern[str]
    weight: int


@dataclass
class Candidate:
    value: str
    context: str
    position: int
    score: int


def collect_candidates(
    text: str, patterns: Iterable[CandidatePattern], rules: Iterable[ContextRule] = (),
) -> list[Candidate]:
    rules = tuple(rules)
    found: list[Candidate] = []
    for cp in patterns:
        for m in cp.pattern.finditer(text):
            value = re.sub(r"\s+", " ", m.group(1) or "").strip()
            if not value:
                continue
            context = m.group(0)
            score = cp.base_score + sum(r.weight for r in rules if r.pattern.search(context))
            found.append(Candidate(value, context, m.start(), score))
    return found


def pick_best_candidate(
    text: Any, patterns: Iterable[CandidatePattern], rules: Iterable[ContextRule] = (),
) -> str:
    """Score every match of every pattern and return the best value.

    Highest score wins; ties go to the earliest position in the text.
    """
    normalized = re.sub(r"\s+", " ", as_text(text))
    if not normalized.strip():
        return ""
    candidates = collect_candidates(normalized, patterns, rules)
    if not candidates:
        return ""
    candidates.sort(key=lambda c: (-c.score, c.position))
    return candidates[0].value


_MONEY = r"\$\s*\d[\d,.]*(?:\.\d+)?(?:\s?(?:thousand|million|billion|k|m|b)\b)?"

FUNDING_PATTERNS: tuple[CandidatePattern, ...] = (
    CandidatePattern(re.compile(
        rf"(?:round\s+info|this\s+raise|today)\b[^\n]{{0,100}}?({_MONEY})\s*raise", re.I)),
    CandidatePattern(re.compile(
        r"(?:target(?:ing)?|currently\s+raising|we\s+are\s+raising|seeking\s+to\s+raise|"
        r"funding\s+sought|raise\s+amount|round\s+(?:size|amount))"
        rf"[^$\n]{{0,35}}({_MONEY})(?:\s*raise)?", re.I)),
    CandidatePattern(re.compile(rf"({_MONEY})\s*raise", re.I)),
)

FUNDING_CONTEXT_RULES: tuple[ContextRule, ...] = (
    ContextRule(re.compile(r"\b(?:round\s+info|this\s+raise|today|target(?:ing)?)\b", re.I), 8),
    ContextRule(re.compile(
        r"\b(?:currently\s+raising|we\s+are\s+raising|seeking\s+to\s+raise|"
        r"funding\s+sought|round\s+(?:size|amount))\b", re.I), 5),
    ContextRule(re.compile(
        r"\b(?:q[1-4]\s*20\d{2}|early\s+20\d{2}|launch|planned\s+evolution|future|start\s+raising)\b"
        r"|\b20\d{2}\s*:", re.I), -7),
    ContextRule(re.compile(r"\bfor\s+carrier\b|\+\s*in\s+equity\b", re.I), -4),
)

# Commitment phrases outrank the bare amount so "raising $1M with $260K
# committed" yields the committed portion, not the ask.
COMMITTED_PATTERNS: tuple[CandidatePattern, ...] = (
    CandidatePattern(re.compile(
        rf"(?:with|including|of)\s*({_MONEY})[^.\n]{{0,20}}(?:already\s+)?"
        r"(?:funded|committed|in\s+commitments?)", re.I), 30),
    CandidatePattern(re.compile(
        rf"(?:committed\s+funding|current\s+commitments?)[:\s-]{{0,20}}({_MONEY})", re.I), 20),
    CandidatePattern(re.compile(
        rf"({_MONEY})\s*(?:already\s+)?(?:funded|committed|in\s+commitments?)", re.I), 10),
)


def extract_funding_amount(text: Any) -> str:
    """Best guess at the amount of the current raise, or ``""``."""
    return pick_best_candidate(text, FUNDING_PATTERNS, FUNDING_CONTEXT_RULES)


def extract_committed_amount(text: Any) -> str:
    """Already-committed portion of a round, or ``""``."""
    return pick_best_candidate(text, COMMITTED_PATTERNS)


def extract_company_raise_from_documents(text: Any, company_name: Any = None) -> str:
    normalized = re.sub(r"\s+", " ", as_text(text))
    if not normalized.strip():
        return ""
    direct = extract_funding_amount(normalized)
    if direct:
        return direct
    name = as_text(company_name).strip()
    if not name:
        return ""
    m = re.search(rf"{re.escape(name)}[^.\n]{{0,80}}({_MONEY})\s*raise", normalized, re.I)
    return re.sub(r"\s+", " ", m.group(1)).strip() if m else ""


_MAGNITUDE_RE = re.compile(r"(-?\d+(?:\.\d+)?)\s*(trillion|billion|million|thousand|t|b|m|k)?", re.I)
_MAGNITUDES = {
    "trillion": 1e12, "t": 1e12, "billion": 1e9, "b": 1e9,
    "million": 1e6, "m": 1e6, "thousand": 1e3, "k": 1e3,
}


def parse_magnitude_value(raw: Any) -> float | None:
    """``"$2.5B"`` -> ``2.5e9``; None when no number is present."""
    m = _MAGNITUDE_RE.search(as_text(raw).lower().replace(",", ""))
    if not m:
        return None
    try:
        value = float(m.group(1))
    except ValueError:
        return None
    return value * _MAGNITUDES.get((m.group(2) or "").lower(), 1.0)


_TAM_LINE_RE = re.compile(r"tam|sam|som|market\s+size|addressable\s+market|total\s+addressable", re.I)
_TAM_MONEY_RE = re.compile(r"(\$?\d[\d,.]*(?:\.\d+)?\s?(?:trillion|billion|million|thousand|t|b|m|k))\b", re.I)
_GROWTH_LINE_RE = re.compile(
    r"cagr|market\s+growth|industry\s+growth|growth\s+rate|year[-\s]?over[-\s]?year", re.I)


def _evidence_lines(text: Any) -> list[str]:
    return [ln.strip() for ln in as_text(text).split("\n") if ln.strip()][:1200]


def extract_tam_from_evidence_text(text: Any) -> str | None:
    """Largest market-size figure on any TAM/SAM/SOM line."""
    best: tuple[str, float] | None = None
    for line in _evidence_lines(text):
        if not _TAM_LINE_RE.search(line):
            continue
        for m in _TAM_MONEY_RE.finditer(line):
            raw = m.group(1).strip()
            value = parse_magnitude_value(raw)
            if value and (best is None or value > best[1]):
                best = (raw, value)
    return best[0] if best else None


def extract_market_growth_from_evidence_text(text: Any) -> str | None:
    best: float | None = None
    for line in _evidence_lines(text):
        if not _GROWTH_LINE_RE.search(line):
            continue
        for m in re.finditer(r"(\d+(?:\.\d+)?)\s*%", line):
            pct = float(m.group(1))
            if 0 <= pct <= 150 and (best is None or pct > best):
                best = pct
    return f"{round(best)}%" if best is not None else None


def derive_tam_from_score(score: DiligenceScore | None) -> str:
    intel = (score.external_market_intelligence if score else None) or {}
    tss = intel.get("tam_sam_som") if isinstance(intel, dict) else None
    if not isinstance(tss, dict):
        return ""
    for key in ("company_claim", "independent_estimate"):
        block = tss.get(key)
        if isinstance(block, dict):
            tam = normalize_tam_candidate(block.get("tam"))
            if tam:
                return tam
    return ""


def deal_terms_text(score: DiligenceScore | None) -> str:
    """Answer, reasoning and evidence lines of the deal-terms category."""
    if score is None:
        return ""
    for cat in score.categories:
        if re.search(r"deal\s*terms", cat.category, re.I):
            lines: list[str] = []
            for crit in cat.criteria:
                lines.extend([crit.answer, crit.reasoning, *crit.evidence])
            return "\n".join(lines)
    return ""


def extract_from_deal_terms(score: DiligenceScore | None, extractor: Callable[[Any], str]) -> str:
    return _normalize_candidate(extractor(deal_terms_text(score)))


# ---------------------------------------------------------------------------
# Cleaning
# ---------------------------------------------------------------------------

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.I)
_SPACED_CAPS_RE = re.compile(r"(?:\b[A-Z]\s+){4,}[A-Z]\b")
_OUTLINE_RE = re.compile(r"\boutline\s+\d+\b", re.I)
_SOURCE_RE = re.compile(r"\bsource:\s*[^.!?\n]{0,220}", re.I)
_ABC_RE = re.compile(r"\b[A-D]\s+problem\s+[A-D]\s+solution\s+[A-D]\s+opportunity\b", re.I)
_BIO_RE = re.compile(
    r"\b(?:ph\.?d\.?|professor|harvard|wharton|stanford|uc berkeley|uc san diego|treasury)\b", re.I)
_BUSINESS_RE = re.compile(
    r"\b(?:problem|pain|challenge|solution|platform|product|inspection|underwriting|insurance)\b", re.I)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+|\n+|\s+\|\s+|(?<=\D)\s{2,}(?=[A-Z])")

_DECK_ARTIFACTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b\d+\s*/\s*\d+\b"), " "),
    (_EMAIL_RE, " "),
    (re.compile(r"\b(?:powered by docsend|docsend privacy policy|cookies\s*&\s*ccpa preferences)\b", re.I), " "),
    (re.compile(r"\b(?:select page|content unavailable|this content is no longer available)\b", re.I), " "),
    (re.compile(
        r"\b(?:there was an error loading part of this content|please enable cookies then reload the page)\b",
        re.I), " "),
    # injected web-search scaffolding
    (re.compile(r"#\s*web search results[^\n]*", re.I), " "),
    (re.compile(r"search performed:\s*[^\n]*", re.I), " "),
    (re.compile(r"##\s*search:\s*\"[^\n]*\"", re.I), " "),
    (re.compile("⚠️?\\s*search failed:\\s*[^\\n]*", re.I), " "),
    (re.compile(r"serper api error:\s*[^\n]*", re.I), " "),
    (re.compile(r"#\s*current web information[^\n]*", re.I), " "),
    (re.compile(r"\*\*analysis instructions\*\*:.*$", re.I | re.S), " "),
    (_OUTLINE_RE, " "),
    (_SOURCE_RE, " "),
    (_ABC_RE, " "),
    (re.compile(r"\n?\s*---\s*\n?"), " "),
)

_RICH_TEXT_ARTIFACTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"Reply,\s*and\s*I[’']ll\s*share\s*the\s*deck\.?", re.I), " "),
    (re.compile(r"mso-[a-z-]+", re.I), " "),
)


def normalize_bullet_text(text: Any) -> str:
    return re.sub(r"\s+", " ", as_text(text)).strip()


def _apply(text: str, rules: tuple[tuple[re.Pattern[str], str], ...]) -> str:
    for pattern, repl in rules:
        text = pattern.sub(repl, text)
    return re.sub(r"\s+", " ", text).strip()


def strip_deck_extraction_artifacts(value: Any) -> str:
    raw = as_text(value)
    return _apply(raw, _DECK_ARTIFACTS) if raw else ""


def _markup_text(raw: str) -> str:
    if "<" not in raw and "&" not in raw:
        return raw
    try:
        fragment = lxml_html.fragment_fromstring(raw, create_parent="div")
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return raw
    for node in fragment.xpath(".//script | .//style"):
        node.drop_tree()
    return " ".join(fragment.xpath(".//text()"))


def strip_rich_text_artifacts(value: Any) -> str:
    raw = as_text(value)
    return _apply(_markup_text(raw), _RICH_TEXT_ARTIFACTS) if raw else ""


def collapse_repeated_phrase_tail(text: Any) -> str:
    value = normalize_bullet_text(text)
    if not value:
        return ""
    return re.sub(r"\b(.{12,80}?)\s+\1\b", r"\1", value, flags=re.I)


def strip_leading_slide_marker(line: Any) -> str:
    return normalize_bullet_text(re.sub(r"^\s*\d{1,2}\s+(?=[A-Za-z(])", "", as_text(line)))


def sanitize_snapshot_candidate(line: Any) -> str:
    text = as_text(line)
    text = _SPACED_CAPS_RE.sub(" ", text)
    text = re.sub(r"\s+[—–-]\s+[^.?!\n]{20,}$", " ", text)
    text = re.sub(r"\s+[→➜]\s+[^.?!\n]{10,}$", " ", text)
    text = _OUTLINE_RE.sub(" ", text)
    text = _SOURCE_RE.sub(" ", text)
    text = _ABC_RE.sub(" ", text)
    return normalize_bullet_text(strip_leading_slide_marker(text))


def is_likely_deck_fragment(line: Any) -> bool:
    """True when a line looks like slide layout residue rather than a sentence."""
    text = sanitize_snapshot_candidate(line)
    if not text or len(text) < 24:
        return True
    if re.match(r"^\d+\s*(?:/\s*\d+)?$", text):
        return True
    if _SPACED_CAPS_RE.search(text):
        return True
    if re.match(r"^(?:[A-D]\s+[A-Za-z][A-Za-z-]*\s*){2,}$", text):
        return True
    if re.search(r"\binsuring resilience outline\b", text, re.I):
        return True
    if _BIO_RE.search(text) and not _BUSINESS_RE.search(text):
        return True
    if re.search(
        r"\b(?:founder and ceo|select page|document request and collection|uploaded directly to the platform)\b",
        text, re.I,
    ):
        return True
    return bool(_EMAIL_RE.search(text))


def split_sentences(text: Any) -> list[str]:
    return [s for s in _SENTENCE_SPLIT_RE.split(as_text(text)) if s]


def dedupe_list(items: Iterable[Any], max_items: int = 6) -> list[str]:
    seen: dict[str, None] = {}
    for item in items:
        line = normalize_bullet_text(item)
        if line:
            seen.setdefault(line, None)
    return list(seen)[:max_items]


def as_short_string(value: Any, max_len: int = 280) -> str | None:
    """First one or two clean sentences of *value*, or None."""
    base = normalize_bullet_text(strip_deck_extraction_artifacts(strip_rich_text_artifacts(value)))
    if not base:
        return None
    sentences = [
        s for s in (sanitize_snapshot_candidate(p) for p in split_sentences(base))
        if s and not is_likely_deck_fragment(s)
    ]
    best = " ".join(sentences[:2]) if sentences else base
    trimmed = re.sub(r"(?:\b[A-Z]\s+){4,}[A-Z]\b.*$", "", best, flags=re.S)
    trimmed = re.sub(
        r"\b(?:ph\.?d\.?|professor|harvard|wharton|stanford|uc berkeley|uc san diego|treasury)\b.*$",
        "", trimmed, flags=re.I | re.S,
    ).strip()
    return collapse_repeated_phrase_tail(trimmed)[:max_len]


def normalize_comparable_token(value: Any) -> str:
    text = normalize_bullet_text(strip_rich_text_artifacts(value)).lower()
    text = re.sub(r"^https?://", "", text)
    text = re.sub(r"^www\.", "", text)
    text = re.sub(r"[^\w.\- ]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


_LOW_INFO_RE = re.compile(
    r"\b(?:unknown|unclear|not specified|not provided|insufficient|no information|n/a|none)\b")


def is_low_information_text(value: Any, disallowed_tokens: Iterable[str] = ()) -> bool:
    """True for empty, "unknown"-style text, or text that is only the company name/domain."""
    text = normalize_bullet_text(strip_rich_text_artifacts(value)).lower()
    if not text or _LOW_INFO_RE.search(text):
        return True
    normalized = normalize_comparable_token(text)
    if not normalized:
        return True
    return any(token and normalized == token for token in disallowed_tokens)


_NON_INFORMATIVE_PHRASES = (
    "pdf was parsed but contains minimal extractable text",
    "document could not be parsed",
    "pdf parsing library is not properly configured",
    "external document link:",
    "failed to ingest external link",
    "content appears unavailable from mirror fetch",
)


def is_non_informative_extracted_text(value: Any) -> bool:
    text = normalize_bullet_text(as_text(value).lower())
    return not text or any(p in text for p in _NON_INFORMATIVE_PHRASES)


def first_usable_short_string(
    candidates: Iterable[Any], max_len: int = 320, disallowed_tokens: Iterable[str] = (),
) -> str | None:
    tokens = tuple(disallowed_tokens)
    for candidate in candidates:
        if is_low_information_text(candidate, tokens):
            continue
        short = as_short_string(candidate, max_len)
        if short:
            return short
    return None


def first_clean_sentence(value: Any, max_len: int = 320) -> str | None:
    cleaned = as_short_string(value, max_len)
    if not cleaned:
        return None
    for part in re.split(r"(?<=[.!?])\s+|\s+[—–-]\s+|\s+[→➜]\s+", cleaned):
        sentence = sanitize_snapshot_candidate(part)
        if sentence and not is_likely_deck_fragment(sentence):
            return sentence[:max_len]
    return None


def build_concise_snapshot(primary: Any, fallback_lines: Iterable[Any], max_len: int = 320) -> str | None:
    sentence = first_clean_sentence(primary, max_len)
    if sentence:
        return sentence
    for line in fallback_lines:
        candidate = first_clean_sentence(line, max_len)
        if candidate:
            return candidate
    return None


# ---------------------------------------------------------------------------
# Document usability
# ---------------------------------------------------------------------------

_DOCSEND_ERROR_PATTERNS = (
    re.compile(r"content unavailable", re.I),
    re.compile(r"this content is no longer available", re.I),
    re.compile(r"there was an error loading part of this content", re.I),
    re.compile(r"please enable cookies then reload the page", re.I),
    re.compile(r"if you see this error again", re.I),
)

_UNREADABLE_DOC_PATTERNS = (
    re.compile(r"\[pdf was parsed but contains minimal extractable text", re.I),
    re.compile(r"\[pdf parsing failed:", re.I),
    re.compile(r"\[document could not be parsed\]", re.I),
    re.compile(r"\[image file - text extraction not available", re.I),
    re.compile(r"\[excel parsing error:", re.I),
    re.compile(r"\[powerpoint file appears to be empty", re.I),
    re.compile(r"\[docx appears to be empty\]", re.I),
)


def looks_like_broken_docsend_content(text: Any) -> bool:
    normalized = normalize_bullet_text(text).lower()
    if not normalized or len(normalized) < 180:
        return True
    return any(p.search(normalized) for p in _DOCSEND_ERROR_PATTERNS)


def is_low_quality_link_content(text: Any) -> bool:
    """True when ingested link text is empty, a placeholder, or DocSend chrome."""
    normalized = normalize_bullet_text(text)
    if not normalized:
        return True
    if re.match(r"^external document link:\s*https?://", normalized, re.I):
        return True
    if looks_like_broken_docsend_content(normalized):
        return True
    return bool(re.search(
        r"\b(?:docsend privacy policy|powered by docsend|please enable cookies)\b", normalized, re.I))


def is_unreadable_extracted_text(text: Any) -> bool:
    value = as_text(text).strip()
    return not value or any(p.search(value) for p in _UNREADABLE_DOC_PATTERNS)


def should_use_document_for_scoring(doc: DiligenceDocument) -> bool:
    text = as_text(doc.extracted_text).strip()
    if not text:
        return False
    if doc.is_link and (doc.link_ingest_status != "ingested" or is_low_quality_link_content(text)):
        return False
    return True
