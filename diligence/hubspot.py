"""HubSpot CRM sync: deal property mapping, create-field checks and a rate-limit aware client.

Scoring never moves a deal between stages; only the create path sets a
(default) stage, and updates leave ``dealstage`` untouched.
"""
from __future__ import annotations

import asyncio
import logging
import os
import random
import re
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlparse

import httpx

from diligence.schemas import DiligenceRecord, HubSpotCompanyData
from diligence.utils import utc_now_iso

log = logging.getLogger(__name__)

T = TypeVar("T")

HUBSPOT_API = "https://api.hubapi.com"
_TIMEOUT = 20.0


class HubSpotError(Exception):
    """HubSpot is unconfigured, rejected a request, or the record cannot be synced."""
    def __init__(
        self,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
        error_type: str | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after
        self.error_type = error_type


# ---------------------------------------------------------------------------
# Rate-limit retry
# ---------------------------------------------------------------------------


def is_rate_limit_error(exc: BaseException) -> bool:
    status = getattr(exc, "status", None)
    if status == 429:
        return True
    message = str(exc).lower()
    error_type = (getattr(exc, "error_type", None) or "").lower()
    return "rate limit" in message or "ten_secondly_rolling" in message or error_type == "rate_limit"


def retry_delay_seconds(exc: BaseException, attempt: int) -> float:
    """``Retry-After`` if given, else 0.8s doubled per attempt; plus jitter, capped at 7s."""
    retry_after = getattr(exc, "retry_after", None)
    base = retry_after if retry_after and retry_after > 0 else 0.8 * (2 ** attempt)
    return min(base + random.uniform(0, 0.25), 7.0)


async def with_rate_limit_retry(
    op_name: str,
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 4,
) -> T:
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not is_rate_limit_error(exc) or attempt >= max_attempts - 1:
                raise
            wait = retry_delay_seconds(exc, attempt)
            log.warning(
                "HubSpot rate limit hit during %s, retrying in %.2fs (attempt %d/%d)",
                op_name, wait, attempt + 2, max_attempts,
            )
            await asyncio.sleep(wait)
            attempt += 1


# ---------------------------------------------------------------------------
# Value normalizers
# ---------------------------------------------------------------------------


def normalize_create_value(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, bool):
        return "true" if raw else "false"
    if isinstance(raw, (int, float)):
        return str(raw)
    if isinstance(raw, (list, tuple)):
        return ", ".join(s for s in (str(i if i is not None else "").strip() for i in raw) if s)
    return ""


def normalize_runway_for_deal(raw: Any) -> str:
    """Ranges and bounds pass through; a single figure becomes a whole number of months."""
    value = normalize_create_value(raw)
    if not value:
        return ""
    lowered = " ".join(value.lower().split())
    if re.search(r"[-–]|\bto\b|>|<|under|over|less than|more than", lowered):
        return value
    m = re.search(r"(\d+(?:\.\d+)?)", lowered)
    if not m:
        return value
    return str(int(float(m.group(1)) + 0.5))


def normalize_valuation_in_millions(raw: Any) -> str:
    value = normalize_create_value(raw)
    if not value:
        return ""
    cleaned = re.sub(r"[$,\s]", "", value.lower())
    m = re.match(r"^(-?\d+(?:\.\d+)?)([kmb])?$", cleaned)
    if not m:
        return value
    base = float(m.group(1))
    suffix = m.group(2)
    if suffix == "b":
        millions = base * 1000
    elif suffix == "m":
        millions = base
    elif suffix == "k":
        millions = base / 1000
    else:
        millions = base / 1_000_000 if base > 100_000 else base
    rounded = round(millions, 2)
    return str(int(rounded)) if rounded.is_integer() else str(rounded)


def extract_domain(raw_url: str | None) -> str | None:
    raw = (raw_url or "").strip()
    if not raw:
        return None
    url = raw if re.match(r"^https?://", raw, re.I) else f"https://{raw}"
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        host = ""
    if not host:
        host = re.sub(r"^https?://", "", raw, flags=re.I).split("/")[0]
    host = re.sub(r"^www\.", "", host, flags=re.I).lower()
    return host or None


def normalize_comparable_host(raw_url: str | None) -> str:
    raw = (raw_url or "").strip()
    if not raw:
        return ""
    url = raw if raw.startswith(("http://", "https://")) else f"https://{raw}"
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""
    return re.sub(r"^www\.", "", host).strip()


def hosts_likely_match(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a == b or a.endswith(f".{b}") or b.endswith(f".{a}")


def should_trust_hubspot_company_data(company_url: str | None, data: HubSpotCompanyData | None) -> bool:
    """HubSpot data is trusted unless both sides name a website and the hosts disagree."""
    if data is None:
        return False
    record_host = normalize_comparable_host(company_url)
    if not record_host:
        return True
    hosts = [h for h in (normalize_comparable_host(data.website), normalize_comparable_host(data.domain)) if h]
    if not hosts:
        return True
    return any(hosts_likely_match(record_host, h) for h in hosts)


# ---------------------------------------------------------------------------
# Deal properties
# ---------------------------------------------------------------------------


def deal_property_names() -> dict[str, str]:
    """Portal-specific deal property names, overridable per environment."""
    env = os.environ.get
    return {
        "raise_amount": env("HUBSPOT_DEAL_RAISE_AMOUNT_PROPERTY", "raise_amount"),
        "committed_funding": env("HUBSPOT_DEAL_COMMITTED_FUNDING_PROPERTY", "committed_funding"),
        "valuation": env("HUBSPOT_DEAL_VALUATION_PROPERTY", "deal_valuation"),
        "deal_terms": env("HUBSPOT_DEAL_TERMS_PROPERTY", "deal_terms"),
        "current_runway": env("HUBSPOT_DEAL_CURRENT_RUNWAY_PROPERTY", "current_runway"),
        "post_funding_runway": env("HUBSPOT_DEAL_POST_FUNDING_RUNWAY_PROPERTY", "post_runway_funding"),
    }


def compact_properties(props: dict[str, Any]) -> dict[str, str]:
    out: dict[str, str] = {}
    for key, value in props.items():
        normalized = normalize_create_value(value)
        if normalized:
            out[key] = normalized
    return out


def build_deal_properties(
    record: DiligenceRecord,
    app_url: str,
    existing_description: str | None = None,
) -> dict[str, str]:
    if record.score is None:
        raise HubSpotError("Cannot sync diligence without a score")
    names = deal_property_names()
    score = record.score
    description = (
        (existing_description or "").strip()
        or (record.company_one_liner or "").strip()
        or f"Diligence completed on {(score.scored_at or utc_now_iso())[:10]}"
    )
    props: dict[str, Any] = {
        "dealname": record.company_name,
        "description": description,
        "diligence_score": str(score.overall),
        "diligence_date": score.scored_at or "",
        "diligence_status": record.status,
        "diligence_link": f"{app_url.rstrip('/')}/diligence/{record.id}",
        "diligence_data_quality": str(score.data_quality),
        "diligence_arr": record.metric("arr"),
        "diligence_tam": record.metric("tam"),
        "diligence_acv": record.metric("acv"),
        names["raise_amount"]: record.metric("funding_amount"),
        names["committed_funding"]: record.metric("committed"),
        names["valuation"]: normalize_valuation_in_millions(record.metric("valuation")),
        names["deal_terms"]: record.metric("deal_terms"),
        names["current_runway"]: normalize_runway_for_deal(record.metric("current_runway")),
        names["post_funding_runway"]: normalize_runway_for_deal(record.metric("post_funding_runway")),
        "website": record.company_url or "",
    }
    return compact_properties(props)


# ---------------------------------------------------------------------------
# Create-field evaluation
# ---------------------------------------------------------------------------


@dataclass
class CreateFieldState:
    field_name: str
    hubspot_property: str
    object: str  # company | deal
    required: bool = False
    required_mode: str = "warning"  # hard | warning
    value: str = ""
    missing: bool = False


@dataclass
class CreateFieldEvaluation:
    states: list[CreateFieldState]
    missing_hard: list[str] = field(default_factory=list)
    missing_warnings: list[str] = field(default_factory=list)


DEAL_CREATE_FIELDS = [
    CreateFieldState("Deal Name", "dealname", "deal", required=True, required_mode="hard"),
    CreateFieldState("Pipeline", "pipeline", "deal", required=True, required_mode="hard"),
    CreateFieldState("Deal Stage", "dealstage", "deal", required=True, required_mode="hard"),
    CreateFieldState("Raise Amount", "raise_amount", "deal", required=True),
    CreateFieldState("Website", "website", "deal", required=True),
]


def evaluate_create_fields(fields: list[CreateFieldState], props: dict[str, Any]) -> CreateFieldEvaluation:
    states = []
    for f in fields:
        value = normalize_create_value(props.get(f.hubspot_property, ""))
        states.append(replace(f, value=value, missing=f.required and not value))
    return CreateFieldEvaluation(
        states=states,
        missing_hard=[s.field_name for s in states if s.missing and s.required_mode == "hard"],
        missing_warnings=[s.field_name for s in states if s.missing and s.required_mode == "warning"],
    )


# ---------------------------------------------------------------------------
# Company data mapping
# ---------------------------------------------------------------------------

COMPANY_PROPERTY_MAP = {
    "name": "name",
    "domain": "domain",
    "website": "website",
    "description": "description",
    "industry": "industry",
    "annual_revenue": "annualrevenue",
    "number_of_employees": "numberofemployees",
    "city": "city",
    "state": "state",
    "country": "country",
    "linkedin_url": "linkedin_company_page",
    "funding_amount": "how_much_are_you_raising_",
    "current_commitments": "current_commitments",
    "tam_range": "tam_range",
    "current_runway": "what_is_your_current_runway_",
    "post_funding_runway": "post_funding_runway",
    "funding_valuation": "funding_valuation",
    "pitch_deck_url": "pitch_deck_url",
}


def _prop(value: Any) -> str | None:
    text = normalize_create_value(value)
    if ";" in text:
        text = ", ".join(p.strip() for p in text.split(";") if p.strip())
    return text or None


def map_company_data(company: dict[str, Any]) -> HubSpotCompanyData:
    props = company.get("properties") or {}
    data: dict[str, Any] = {"company_id": str(company.get("id") or "")}
    for key, prop in COMPANY_PROPERTY_MAP.items():
        data[key] = _prop(props.get(prop))
    data["name"] = data["name"] or ""
    if not data["current_runway"]:
        data["current_runway"] = _prop(props.get("runway"))
    return HubSpotCompanyData.model_validate(data)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class HubSpotSyncResult:
    deal_id: str
    deal_url: str
    existed: bool
    hubspot_data: HubSpotCompanyData | None = None


class HubSpotClient:
    """Minimal async HubSpot CRM v3/v4 client over httpx."""

    def __init__(
        self,
        access_token: str | None = None,
        portal_id: str | None = None,
        app_url: str | None = None,
        base_url: str = HUBSPOT_API,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token or os.environ.get("HUBSPOT_ACCESS_TOKEN", "")
        self.portal_id = portal_id or os.environ.get("HUBSPOT_PORTAL_ID", "")
        self.app_url = app_url or os.environ.get("APP_URL", "http://localhost:8000")
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    def deal_url(self, deal_id: str) -> str:
        return f"https://app.hubspot.com/contacts/{self.portal_id}/record/0-3/{deal_id}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self.configured:
            raise HubSpotError("HubSpot is not configured")

        async def send() -> dict[str, Any]:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(_TIMEOUT),
                headers={"Authorization": f"Bearer {self.access_token}"},
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, **kwargs)
            if resp.status_code >= 400:
                raise _error_from_response(resp)
            return resp.json() if resp.content else {}

        return await with_rate_limit_retry(f"{method} {path}", send)

    async def get_deal(self, deal_id: str) -> dict[str, Any] | None:
        props = ["dealname", "dealstage", "pipeline", "amount", "description", *deal_property_names().values()]
        try:
            return await self._request(
                "GET", f"/crm/v3/objects/deals/{deal_id}", params={"properties": ",".join(props)},
            )
        except HubSpotError as exc:
            if exc.status == 404:
                return None
            raise

    async def search_deals_by_name(self, name: str, limit: int = 10) -> list[dict[str, Any]]:
        body = {
            "filterGroups": [{"filters": [
                {"propertyName": "dealname", "operator": "CONTAINS_TOKEN", "value": name},
            ]}],
            "properties": ["dealname", "dealstage", "pipeline", "description"],
            "limit": limit,
        }
        data = await self._request("POST", "/crm/v3/objects/deals/search", json=body)
        return list(data.get("results") or [])

    async def get_associated_company_for_deal(self, deal_id: str) -> HubSpotCompanyData | None:
        data = await self._request("GET", f"/crm/v4/objects/deals/{deal_id}/associations/companies")
        results = data.get("results") or []
        if not results:
            return None
        company_id = str(results[0].get("toObjectId") or "")
        if not company_id:
            return None
        company = await self._request(
            "GET",
            f"/crm/v3/objects/companies/{company_id}",
            params={"properties": ",".join({*COMPANY_PROPERTY_MAP.values(), "runway"})},
        )
        return map_company_data(company)

    async def _find_existing_deal(self, record: DiligenceRecord) -> dict[str, Any] | None:
        if record.hubspot_deal_id:
            deal = await self.get_deal(record.hubspot_deal_id)
            if deal:
                return deal
        results = await self.search_deals_by_name(record.company_name)
        if not results:
            return None
        target = record.company_name.lower()
        return next(
            (d for d in results if ((d.get("properties") or {}).get("dealname") or "").lower() == target),
            results[0],
        )

    async def sync_record(self, record: DiligenceRecord) -> HubSpotSyncResult:
        """Push score and deal metrics to HubSpot, updating the existing deal or creating one."""
        if not self.configured:
            raise HubSpotError("HubSpot is not configured")
        if record.score is None:
            raise HubSpotError("Cannot sync diligence without a score")

        existing = await self._find_existing_deal(record)
        existing_description = ((existing or {}).get("properties") or {}).get("description")
        props = build_deal_properties(record, self.app_url, existing_description)

        if existing:
            deal_id = str(existing["id"])
            await self._request("PATCH", f"/crm/v3/objects/deals/{deal_id}", json={"properties": props})
        else:
            create_props = {
                **props,
                "pipeline": os.environ.get("HUBSPOT_DEFAULT_DEAL_PIPELINE_ID", "default"),
                "dealstage": os.environ.get("HUBSPOT_DEFAULT_DEAL_STAGE_ID", "qualifiedtobuy"),
            }
            names = deal_property_names()
            fields = [
                replace(f, hubspot_property=names["raise_amount"]) if f.hubspot_property == "raise_amount" else f
                for f in DEAL_CREATE_FIELDS
            ]
            evaluation = evaluate_create_fields(fields, create_props)
            if evaluation.missing_hard:
                raise HubSpotError(f"Missing required deal fields: {', '.join(evaluation.missing_hard)}")
            if evaluation.missing_warnings:
                log.info("Creating HubSpot deal for %s without: %s",
                         record.company_name, ", ".join(evaluation.missing_warnings))
            created = await self._request("POST", "/crm/v3/objects/deals", json={"properties": create_props})
            deal_id = str(created["id"])

        company: HubSpotCompanyData | None = None
        try:
            company = await self.get_associated_company_for_deal(deal_id)
            if company and company.company_id and (record.industry or "").strip():
                await self._request(
                    "PATCH", f"/crm/v3/objects/companies/{company.company_id}",
                    json={"properties": {"industry": record.industry.strip()}},
                )
        except HubSpotError as exc:
            log.warning("HubSpot company update failed for %s: %s", record.company_name, exc)

        return HubSpotSyncResult(
            deal_id=deal_id,
            deal_url=self.deal_url(deal_id),
            existed=existing is not None,
            hubspot_data=company,
        )


def _error_from_response(resp: httpx.Response) -> HubSpotError:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    body = body if isinstance(body, dict) else {}
    message = str(body.get("message") or resp.text[:200] or f"HTTP {resp.status_code}")
    retry_after: float | None
    try:
        retry_after = float(resp.headers.get("retry-after", ""))
    except ValueError:
        retry_after = None
    return HubSpotError(
        f"HubSpot API error {resp.status_code}: {message}",
        status=resp.status_code,
        retry_after=retry_after,
        error_type=str(body.get("errorType") or body.get("category") or "") or None,
    )
