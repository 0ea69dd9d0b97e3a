"""
Async client for the remote CRM.
Wraps lead search, contract and job lookups. Every call returns a FetchResult;
transport, status and parse failures degrade to an empty payload instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import quote

import httpx


logger = logging.getLogger(__name__)

DEFAULT_CRM_BASE_URL = "https://www.fence360.net/x"
DEFAULT_CRM_TIMEOUT_SECONDS = 15.0
DEFAULT_CRM_CONCURRENCY = 20
DEFAULT_TRACK_STATES = (13, 14)
DEFAULT_CONTRACT_STATUSES = ("Processing",)

SEARCH_PATH = "v2/search"
CONTRACTS_BY_LEAD_PATH = "v4/contracts/by-lead/{lead_id}"
CONTRACT_DETAIL_PATH = "v4/contracts/{contract_id}"
JOB_DETAIL_PATH = "v5/jobs/{job_id}"

CRM_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}


def _parse_int_list(raw: Optional[str], default: tuple[int, ...]) -> tuple[int, ...]:
    if raw is None or not raw.strip():
        return default
    values = []
    for token in raw.split(","):
        token = token.strip()
        if token.lstrip("-").isdigit():
            values.append(int(token))
    return tuple(values) or default


def _parse_str_list(raw: Optional[str], default: tuple[str, ...]) -> tuple[str, ...]:
    if raw is None or not raw.strip():
        return default
    values = tuple(token.strip() for token in raw.split(",") if token.strip())
    return values or default


@dataclass(frozen=True)
class CrmSettings:
    base_url: str = DEFAULT_CRM_BASE_URL
    cookie: str = ""
    timeout_seconds: float = DEFAULT_CRM_TIMEOUT_SECONDS
    concurrency: int = DEFAULT_CRM_CONCURRENCY
    track_states: tuple[int, ...] = DEFAULT_TRACK_STATES
    contract_statuses: tuple[str, ...] = DEFAULT_CONTRACT_STATUSES


def load_crm_settings() -> CrmSettings:
    """Read CRM settings from LEAD_MATCHER_* environment variables."""
    return CrmSettings(
        base_url=str(os.getenv("LEAD_MATCHER_CRM_BASE_URL") or DEFAULT_CRM_BASE_URL).rstrip("/"),
        cookie=str(os.getenv("LEAD_MATCHER_CRM_COOKIE") or ""),
        timeout_seconds=float(os.getenv("LEAD_MATCHER_CRM_TIMEOUT", str(DEFAULT_CRM_TIMEOUT_SECONDS))),
        concurrency=max(1, int(os.getenv("LEAD_MATCHER_CRM_CONCURRENCY", str(DEFAULT_CRM_CONCURRENCY)))),
        track_states=_parse_int_list(os.getenv("LEAD_MATCHER_TRACK_STATES"), DEFAULT_TRACK_STATES),
        contract_statuses=_parse_str_list(os.getenv("LEAD_MATCHER_CONTRACT_STATUSES"), DEFAULT_CONTRACT_STATUSES),
    )


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one CRM call: ``ok`` with a payload, or a failure status label."""

    ok: bool
    payload: Any
    status: str

    @classmethod
    def success(cls, payload: Any) -> "FetchResult":
        return cls(ok=True, payload=payload, status="ok")

    @classmethod
    def failure(cls, status: str, empty: Any = None) -> "FetchResult":
        return cls(ok=False, payload=empty, status=status)


@dataclass(frozen=True)
class LeadHit:
    id: Any
    first_name: str
    last_name: str
    track_state: Optional[int] = None
    raw: dict = field(default_factory=dict, compare=False, hash=False, repr=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @classmethod
    def from_payload(cls, payload: dict) -> "LeadHit":
        return cls(
            id=payload.get("id"),
            first_name=str(payload.get("first_name") or ""),
            last_name=str(payload.get("last_name") or ""),
            track_state=payload.get("track_state"),
            raw=dict(payload),
        )

    def to_dict(self) -> dict:
        return dict(self.raw) if self.raw else {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "track_state": self.track_state,
        }


def _normalize_reason(reason: str) -> str:
    clean = str(reason or "").strip().lower()
    clean = re.sub(r"[^a-z0-9_]+", "_", clean)
    return clean.strip("_")


def _path_id(value: Any) -> str:
    return quote(str(value), safe="")


class CrmClient:
    """
    Session-scoped CRM client.

    Use as an async context manager. The forwarded cookie is attached to every
    request; at most ``settings.concurrency`` calls are in flight at once.
    """

    def __init__(
        self,
        settings: CrmSettings,
        cookie: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._cookie = cookie if cookie is not None else settings.cookie
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._sem: Optional[asyncio.Semaphore] = None

    async def __aenter__(self) -> "CrmClient":
        timeout = httpx.Timeout(self.settings.timeout_seconds)
        limits = httpx.Limits(
            max_connections=self.settings.concurrency,
            max_keepalive_connections=max(1, self.settings.concurrency // 2),
        )
        headers = dict(CRM_HEADERS)
        if self._cookie:
            headers["Cookie"] = self._cookie
        self._client = httpx.AsyncClient(
            base_url=self.settings.base_url + "/",
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        self._sem = asyncio.Semaphore(self.settings.concurrency)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None

    async def _get_json(self, path: str, params: Optional[dict] = None, empty: Any = None) -> FetchResult:
        if self._client is None or self._sem is None:
            raise RuntimeError("CrmClient must be used as an async context manager.")

        async with self._sem:
            try:
                response = await self._client.get(path, params=params)
            except httpx.TimeoutException:
                status = "fetch_timeout"
            except httpx.ConnectError:
                status = "fetch_connect_error"
            except httpx.HTTPError as exc:
                status = f"fetch_http_error_{_normalize_reason(type(exc).__name__)}"
            else:
                if not response.is_success:
                    status = f"http_{response.status_code}"
                else:
                    try:
                        return FetchResult.success(response.json())
                    except ValueError:
                        status = "invalid_json"

        logger.warning("CRM request %s failed: %s", path, status)
        return FetchResult.failure(status, empty=empty)

    async def search_leads_by_name(
        self,
        term: str,
        track_states: Optional[Iterable[int]] = None,
    ) -> FetchResult:
        """Search leads by free text. ``track_states`` restricts hits to those states."""
        result = await self._get_json(SEARCH_PATH, params={"q": term}, empty=[])
        if not result.ok:
            return result

        payload = result.payload if isinstance(result.payload, dict) else {}
        leads = [
            LeadHit.from_payload(item)
            for item in (payload.get("leads") or [])
            if isinstance(item, dict)
        ]
        if track_states is not None:
            allowed = set(track_states)
            leads = [lead for lead in leads if lead.track_state in allowed]
        return FetchResult.success(leads)

    async def list_contracts_by_lead(
        self,
        lead_id: Any,
        statuses: Optional[Iterable[str]] = None,
    ) -> FetchResult:
        path = CONTRACTS_BY_LEAD_PATH.format(lead_id=_path_id(lead_id))
        result = await self._get_json(path, empty=[])
        if not result.ok:
            return result

        payload = result.payload if isinstance(result.payload, list) else []
        contracts = [item for item in payload if isinstance(item, dict)]
        if statuses is not None:
            allowed = set(statuses)
            contracts = [contract for contract in contracts if contract.get("status") in allowed]
        return FetchResult.success(contracts)

    async def get_contract_detail(self, contract_id: Any) -> FetchResult:
        path = CONTRACT_DETAIL_PATH.format(contract_id=_path_id(contract_id))
        result = await self._get_json(path, empty=None)
        if result.ok and not isinstance(result.payload, dict):
            return FetchResult.failure("unexpected_payload", empty=None)
        return result

    async def get_job_by_id(self, job_id: Any) -> FetchResult:
        path = JOB_DETAIL_PATH.format(job_id=_path_id(job_id))
        result = await self._get_json(path, empty=None)
        if result.ok and not isinstance(result.payload, dict):
            return FetchResult.failure("unexpected_payload", empty=None)
        return result
