"""Re-ingest external document links (websites, DocSend decks) into plain text."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from lxml import etree, html as lxml_html

from diligence.text import looks_like_broken_docsend_content

log = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0 Safari/537.36"
)
_HEADERS = {
    "User-Agent": _USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}
_TIMEOUT = 20.0
_MAX_TEXT = 50_000

_EMAIL_GATE_MARKERS = ("enter your email", "email address", "requires your email", "continue to document")
_EMAIL_FIELD_NAMES = ("email", "emailAddress", "visitor_email")


@dataclass
class LinkIngestResult:
    status: str  # ingested | failed | email_required
    extracted_text: str = ""
    resolved_url: str = ""
    error: str = ""

    @property
    def success(self) -> bool:
        return self.status == "ingested"


def normalize_link_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if not url:
        return ""
    return url if url.lower().startswith(("http://", "https://")) else f"https://{url}"


def is_docsend_url(url: str) -> bool:
    try:
        return (urlparse(url).hostname or "").lower().endswith("docsend.com")
    except ValueError:
        return False


def looks_like_email_gate(raw_html: str) -> bool:
    lower = (raw_html or "").lower()
    return "docsend" in lower and any(m in lower for m in _EMAIL_GATE_MARKERS)


def extract_readable_text(url: str, raw_html: str) -> str:
    """Title, description and body text of an HTML page, as a small markdown document."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    for bad in tree.xpath("//script | //style | //noscript | //svg"):
        bad.drop_tree()
    title = " ".join(tree.xpath("//title//text()")).strip()
    meta = " ".join(tree.xpath("//meta[@name='description']/@content")).strip()
    blocks = [
        " ".join(el.text_content().split())
        for el in tree.xpath("//h1 | //h2 | //h3 | //p | //li")
    ]
    body = "\n".join(b for b in blocks if b)
    if len(body) > _MAX_TEXT:
        body = f"{body[:_MAX_TEXT]}... [content truncated]"

    lines = [f"# {title or 'External Link'}"]
    if meta:
        lines.append(f"**Description**: {meta}")
    lines.append(f"**URL**: {url}")
    lines.append("")
    lines.append("## Extracted Content")
    lines.append(body or "[No readable body text found]")
    return "\n".join(lines).strip()


async def _ingest_docsend(client: httpx.AsyncClient, url: str, access_email: str | None) -> LinkIngestResult:
    resp = await client.get(url)
    if resp.status_code >= 400:
        return LinkIngestResult("failed", error=f"DocSend fetch failed: HTTP {resp.status_code}")
    resolved = str(resp.url)
    gated = looks_like_email_gate(resp.text)

    if gated and access_email:
        for field_name in _EMAIL_FIELD_NAMES:
            try:
                posted = await client.post(
                    resolved, data={field_name: access_email}, headers={"Referer": resolved},
                )
            except httpx.HTTPError as exc:
                log.debug("DocSend email post (%s) failed for %s: %s", field_name, url, exc)
                continue
            if posted.status_code < 400 and not looks_like_email_gate(posted.text):
                return LinkIngestResult(
                    "ingested",
                    extracted_text=extract_readable_text(str(posted.url), posted.text),
                    resolved_url=str(posted.url),
                )

    if gated and not access_email:
        return LinkIngestResult(
            "email_required",
            resolved_url=resolved,
            error="DocSend link appears email-gated. Provide an access email to attempt ingestion.",
        )

    extracted = extract_readable_text(resolved, resp.text)
    if not looks_like_broken_docsend_content(extracted):
        return LinkIngestResult("ingested", extracted_text=extracted, resolved_url=resolved)
    if gated:
        return LinkIngestResult(
            "email_required",
            resolved_url=resolved,
            error="DocSend link appears gated or inaccessible. Provide access email or a direct downloadable deck URL.",
        )
    return LinkIngestResult(
        "failed",
        resolved_url=resolved,
        error="DocSend page rendered an unavailable/error view instead of document content.",
    )


async def ingest_link(raw_url: str, access_email: str | None = None) -> LinkIngestResult:
    """Fetch *raw_url* and classify the outcome. Network errors become ``failed`` results."""
    url = normalize_link_url(raw_url)
    if not url:
        return LinkIngestResult("failed", error="Empty external URL")

    try:
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(_TIMEOUT),
            headers=_HEADERS,
        ) as client:
            if is_docsend_url(url):
                return await _ingest_docsend(client, url, (access_email or "").strip() or None)
            resp = await client.get(url)
            resp.raise_for_status()
    except httpx.HTTPError as exc:
        log.warning("Link ingest failed for %s: %s", url, exc)
        return LinkIngestResult("failed", resolved_url=url, error=str(exc) or "Failed to fetch external URL")

    text = extract_readable_text(str(resp.url), resp.text)
    if not text:
        return LinkIngestResult("failed", resolved_url=url, error="No readable content at external URL")
    log.debug("Ingested %s (%d chars)", url, len(text))
    return LinkIngestResult("ingested", extracted_text=text, resolved_url=str(resp.url))
