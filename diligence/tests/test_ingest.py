"""Tests for external-link ingestion (websites and DocSend)."""
from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest

from diligence.ingest import (
    _ingest_docsend,
    extract_readable_text,
    ingest_link,
    is_docsend_url,
    looks_like_email_gate,
    normalize_link_url,
)

ARTICLE = """<html><head><title>Acme | Freight automation</title>
<meta name="description" content="Dispatch without the inbox.">
<script>var tracking = 1;</script><style>p { color: red }</style></head>
<body><h1>Automate freight dispatch</h1>
<p>Acme turns carrier emails into structured loads with pricing, tracking and exception alerts.</p>
<p>Mid-market logistics operators save hours every day and cut manual reconciliation errors.</p>
<ul><li>Load building</li><li>Carrier scorecards</li></ul></body></html>"""

EMAIL_GATE = """<html><body><h1>DocSend</h1><p>Enter your email to continue to document.</p>
<form><input name="email"></form></body></html>"""

DECK = """<html><head><title>Acme Seed Deck</title></head><body>
<p>Problem: freight dispatchers spend four hours a day reconciling carrier emails by hand.</p>
<p>Solution: Acme builds loads automatically from the inbox and flags exceptions before they become claims.</p>
<p>Traction: 40 paying customers and $1.2M ARR growing 3x year over year.</p></body></html>"""

_RealAsyncClient = httpx.AsyncClient


def _patched_client(handler):
    def factory(**kwargs):
        return _RealAsyncClient(transport=httpx.MockTransport(handler), **kwargs)
    return patch("diligence.ingest.httpx.AsyncClient", side_effect=factory)


class TestHelpers:
    def test_normalize_link_url(self):
        assert normalize_link_url(" acme.dev ") == "https://acme.dev"
        assert normalize_link_url("http://acme.dev") == "http://acme.dev"
        assert normalize_link_url("") == ""

    def test_is_docsend_url(self):
        assert is_docsend_url("https://docsend.com/view/abc")
        assert is_docsend_url("https://acme.docsend.com/view/abc")
        assert not is_docsend_url("https://acme.dev")

    def test_email_gate_detection(self):
        assert looks_like_email_gate(EMAIL_GATE)
        assert not looks_like_email_gate(ARTICLE)

    def test_extract_readable_text(self):
        text = extract_readable_text("https://acme.dev", ARTICLE)
        assert text.startswith("# Acme | Freight automation")
        assert "**Description**: Dispatch without the inbox." in text
        assert "**URL**: https://acme.dev" in text
        assert "Carrier scorecards" in text
        assert "tracking = 1" not in text
        assert "color: red" not in text

    def test_extract_empty_body(self):
        text = extract_readable_text("https://acme.dev", "<html><body></body></html>")
        assert "[No readable body text found]" in text


class TestIngestLink:
    @pytest.mark.asyncio
    async def test_website_ingested(self):
        def handler(request):
            return httpx.Response(200, html=ARTICLE)

        with _patched_client(handler):
            result = await ingest_link("acme.dev")
        assert result.success
        assert result.status == "ingested"
        assert result.resolved_url.startswith("https://acme.dev")
        assert "Automate freight dispatch" in result.extracted_text

    @pytest.mark.asyncio
    async def test_http_error_is_failed_result(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        with _patched_client(handler):
            result = await ingest_link("https://acme.dev")
        assert result.status == "failed"
        assert result.error

    @pytest.mark.asyncio
    async def test_network_error_is_failed_result(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with _patched_client(handler):
            result = await ingest_link("https://acme.dev")
        assert result.status == "failed"
        assert "refused" in result.error

    @pytest.mark.asyncio
    async def test_empty_url(self):
        result = await ingest_link("   ")
        assert result.status == "failed"
        assert result.error == "Empty external URL"


class TestDocSend:
    @pytest.mark.asyncio
    async def test_gate_without_email(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, html=EMAIL_GATE))
        async with httpx.AsyncClient(transport=transport) as client:
            result = await _ingest_docsend(client, "https://docsend.com/view/abc", None)
        assert result.status == "email_required"
        assert "access email" in result.error

    @pytest.mark.asyncio
    async def test_gate_with_email_tries_field_names(self):
        posted: list[bytes] = []

        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, html=EMAIL_GATE)
            posted.append(request.content)
            if b"emailAddress" in request.content:
                return httpx.Response(200, html=DECK)
            return httpx.Response(200, html=EMAIL_GATE)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await _ingest_docsend(client, "https://docsend.com/view/abc", "vc@fund.com")
        assert result.status == "ingested"
        assert "$1.2M ARR" in result.extracted_text
        assert len(posted) == 2

    @pytest.mark.asyncio
    async def test_open_deck(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, html=DECK))
        async with httpx.AsyncClient(transport=transport) as client:
            result = await _ingest_docsend(client, "https://docsend.com/view/abc", None)
        assert result.status == "ingested"

    @pytest.mark.asyncio
    async def test_error_view_is_failed(self):
        page = "<html><body><p>Content unavailable</p></body></html>"
        transport = httpx.MockTransport(lambda request: httpx.Response(200, html=page))
        async with httpx.AsyncClient(transport=transport) as client:
            result = await _ingest_docsend(client, "https://docsend.com/view/abc", None)
        assert result.status == "failed"

    @pytest.mark.asyncio
    async def test_http_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(403))
        async with httpx.AsyncClient(transport=transport) as client:
            result = await _ingest_docsend(client, "https://docsend.com/view/abc", None)
        assert result.status == "failed"
        assert "403" in result.error
