"""Tests for HubSpot value normalizers, deal mapping, rate-limit retry and the sync client."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from diligence.hubspot import (
    DEAL_CREATE_FIELDS,
    HubSpotClient,
    HubSpotError,
    build_deal_properties,
    evaluate_create_fields,
    extract_domain,
    is_rate_limit_error,
    map_company_data,
    normalize_runway_for_deal,
    normalize_valuation_in_millions,
    retry_delay_seconds,
    should_trust_hubspot_company_data,
    with_rate_limit_retry,
)
from diligence.schemas import DiligenceRecord, DiligenceScore, HubSpotCompanyData, MetricValue


def _record(**kwargs) -> DiligenceRecord:
    base = dict(
        id="dd_1_abc",
        company_name="Acme",
        company_url="https://acme.dev",
        company_one_liner="Workflow automation for freight dispatchers.",
        industry="Logistics Software",
        metrics={
            "arr": MetricValue(value="$1.2M"),
            "funding_amount": MetricValue(value="$3M"),
            "valuation": MetricValue(value="$15M"),
            "post_funding_runway": MetricValue(value="24 months"),
            "current_runway": MetricValue(value="9-12 months"),
        },
        score=DiligenceScore(overall=72, data_quality=64, scored_at="2026-02-16T10:00:00+00:00"),
    )
    base.update(kwargs)
    return DiligenceRecord(**base)


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------


class TestNormalizers:
    @pytest.mark.parametrize("raw,expected", [
        ("18 months", "18"),
        ("17.5", "18"),
        ("12-18 months", "12-18 months"),
        ("over 24 months", "over 24 months"),
        ("", ""),
        (None, ""),
    ])
    def test_runway(self, raw, expected):
        assert normalize_runway_for_deal(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("$12M", "12"),
        ("1.5B", "1500"),
        ("500k", "0.5"),
        ("15,000,000", "15"),
        ("8", "8"),
        ("TBD", "TBD"),
    ])
    def test_valuation_in_millions(self, raw, expected):
        assert normalize_valuation_in_millions(raw) == expected

    def test_extract_domain(self):
        assert extract_domain("https://www.Acme.dev/about") == "acme.dev"
        assert extract_domain("acme.dev") == "acme.dev"
        assert extract_domain("") is None

    def test_trust_hubspot_company_data(self):
        data = HubSpotCompanyData(company_id="1", website="https://www.acme.dev")
        assert should_trust_hubspot_company_data("acme.dev", data)
        assert should_trust_hubspot_company_data("https://app.acme.dev", data)
        assert not should_trust_hubspot_company_data("https://other.com", data)
        assert should_trust_hubspot_company_data(None, data)
        assert should_trust_hubspot_company_data("https://acme.dev", HubSpotCompanyData(company_id="1"))
        assert not should_trust_hubspot_company_data("https://acme.dev", None)


class TestDealProperties:
    def test_mapping(self):
        props = build_deal_properties(_record(), "https://app.test/")
        assert props["dealname"] == "Acme"
        assert props["description"] == "Workflow automation for freight dispatchers."
        assert props["diligence_score"] == "72"
        assert props["diligence_link"] == "https://app.test/diligence/dd_1_abc"
        assert props["raise_amount"] == "$3M"
        assert props["deal_valuation"] == "15"
        assert props["post_runway_funding"] == "24"
        assert props["current_runway"] == "9-12 months"
        assert "dealstage" not in props
        assert "diligence_tam" not in props

    def test_existing_description_kept(self):
        props = build_deal_properties(_record(), "https://app.test", existing_description="Set by partner")
        assert props["description"] == "Set by partner"

    def test_property_names_from_env(self, monkeypatch):
        monkeypatch.setenv("HUBSPOT_DEAL_RAISE_AMOUNT_PROPERTY", "round_size")
        props = build_deal_properties(_record(), "https://app.test")
        assert props["round_size"] == "$3M"
        assert "raise_amount" not in props

    def test_requires_score(self):
        with pytest.raises(HubSpotError):
            build_deal_properties(_record(score=None), "https://app.test")

    def test_create_field_evaluation(self):
        evaluation = evaluate_create_fields(DEAL_CREATE_FIELDS, {"dealname": "Acme", "pipeline": "default"})
        assert evaluation.missing_hard == ["Deal Stage"]
        assert evaluation.missing_warnings == ["Raise Amount", "Website"]


class TestMapCompanyData:
    def test_maps_properties(self):
        data = map_company_data({"id": 55, "properties": {
            "name": "Acme Inc",
            "annualrevenue": 1000000,
            "industry": "SOFTWARE;LOGISTICS",
            "runway": "14 months",
        }})
        assert data.company_id == "55"
        assert data.name == "Acme Inc"
        assert data.annual_revenue == "1000000"
        assert data.industry == "SOFTWARE, LOGISTICS"
        assert data.current_runway == "14 months"
        assert data.website is None


# ---------------------------------------------------------------------------
# Rate-limit retry
# ---------------------------------------------------------------------------


class TestRateLimitRetry:
    def test_is_rate_limit_error(self):
        assert is_rate_limit_error(HubSpotError("x", status=429))
        assert is_rate_limit_error(HubSpotError("TEN_SECONDLY_ROLLING limit"))
        assert is_rate_limit_error(HubSpotError("x", error_type="RATE_LIMIT"))
        assert not is_rate_limit_error(HubSpotError("bad request", status=400))

    def test_retry_delay(self):
        assert 2.0 <= retry_delay_seconds(HubSpotError("x", retry_after=2), 0) <= 2.25
        assert 0.8 <= retry_delay_seconds(HubSpotError("x"), 0) <= 1.05
        assert retry_delay_seconds(HubSpotError("x"), 6) == 7.0

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        fn = AsyncMock(side_effect=[HubSpotError("x", status=429), HubSpotError("x", status=429), "ok"])
        with patch("diligence.hubspot.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await with_rate_limit_retry("op", fn) == "ok"
        assert fn.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        fn = AsyncMock(side_effect=HubSpotError("x", status=429))
        with patch("diligence.hubspot.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(HubSpotError):
                await with_rate_limit_retry("op", fn, max_attempts=4)
        assert fn.await_count == 4

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        fn = AsyncMock(side_effect=HubSpotError("bad", status=400))
        with pytest.raises(HubSpotError):
            await with_rate_limit_retry("op", fn)
        assert fn.await_count == 1


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class FakeHubSpot:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self, routes: dict[tuple[str, str], list[httpx.Response]]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "not found"})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def sent(self, method: str, path: str) -> list[dict]:
        return [
            json.loads(r.content) for r in self.requests
            if r.method == method and r.url.path == path and r.content
        ]


def _client(fake: FakeHubSpot) -> HubSpotClient:
    return HubSpotClient(
        access_token="tok", portal_id="123", app_url="https://app.test",
        transport=httpx.MockTransport(fake),
    )


class TestHubSpotClient:
    @pytest.mark.asyncio
    async def test_update_existing_deal_never_moves_stage(self):
        fake = FakeHubSpot({
            ("GET", "/crm/v3/objects/deals/42"): [httpx.Response(200, json={
                "id": "42", "properties": {"dealname": "Acme", "dealstage": "closedwon", "description": ""},
            })],
            ("PATCH", "/crm/v3/objects/deals/42"): [httpx.Response(200, json={"id": "42"})],
            ("GET", "/crm/v4/objects/deals/42/associations/companies"): [httpx.Response(200, json={"results": []})],
        })
        result = await _client(fake).sync_record(_record(hubspot_deal_id="42"))
        assert result.existed is True
        assert result.deal_id == "42"
        assert result.deal_url == "https://app.hubspot.com/contacts/123/record/0-3/42"
        (body,) = fake.sent("PATCH", "/crm/v3/objects/deals/42")
        assert "dealstage" not in body["properties"]
        assert body["properties"]["diligence_score"] == "72"
        assert fake.requests[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_create_deal_and_update_company_industry(self):
        fake = FakeHubSpot({
            ("POST", "/crm/v3/objects/deals/search"): [httpx.Response(200, json={"results": []})],
            ("POST", "/crm/v3/objects/deals"): [httpx.Response(201, json={"id": "999"})],
            ("GET", "/crm/v4/objects/deals/999/associations/companies"): [
                httpx.Response(200, json={"results": [{"toObjectId": 55}]}),
            ],
            ("GET", "/crm/v3/objects/companies/55"): [httpx.Response(200, json={
                "id": "55", "properties": {"name": "Acme Inc", "domain": "acme.dev"},
            })],
            ("PATCH", "/crm/v3/objects/companies/55"): [httpx.Response(200, json={"id": "55"})],
        })
        result = await _client(fake).sync_record(_record())
        assert result.existed is False
        assert result.deal_id == "999"
        assert result.hubspot_data.name == "Acme Inc"
        (created,) = fake.sent("POST", "/crm/v3/objects/deals")
        assert created["properties"]["dealstage"] == "qualifiedtobuy"
        assert created["properties"]["pipeline"] == "default"
        (company_patch,) = fake.sent("PATCH", "/crm/v3/objects/companies/55")
        assert company_patch == {"properties": {"industry": "Logistics Software"}}

    @pytest.mark.asyncio
    async def test_create_blocked_without_hard_fields(self, monkeypatch):
        monkeypatch.setenv("HUBSPOT_DEFAULT_DEAL_STAGE_ID", "")
        fake = FakeHubSpot({
            ("POST", "/crm/v3/objects/deals/search"): [httpx.Response(200, json={"results": []})],
        })
        with pytest.raises(HubSpotError, match="Deal Stage"):
            await _client(fake).sync_record(_record())

    @pytest.mark.asyncio
    async def test_get_deal_404_is_none(self):
        fake = FakeHubSpot({})
        assert await _client(fake).get_deal("missing") is None

    @pytest.mark.asyncio
    async def test_rate_limited_request_is_retried(self):
        fake = FakeHubSpot({
            ("GET", "/crm/v3/objects/deals/42"): [
                httpx.Response(429, headers={"retry-after": "1"}, json={"message": "rate limit"}),
                httpx.Response(200, json={"id": "42", "properties": {}}),
            ],
        })
        with patch("diligence.hubspot.asyncio.sleep", new_callable=AsyncMock) as sleep:
            deal = await _client(fake).get_deal("42")
        assert deal["id"] == "42"
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_unconfigured(self, monkeypatch):
        monkeypatch.delenv("HUBSPOT_ACCESS_TOKEN", raising=False)
        client = HubSpotClient()
        assert client.configured is False
        with pytest.raises(HubSpotError):
            await client.sync_record(_record())
