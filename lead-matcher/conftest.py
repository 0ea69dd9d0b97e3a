"""
Shared fixtures: an in-memory CRM served through httpx.MockTransport.
"""

import asyncio

import httpx
import pytest

from crm_client import CrmClient, CrmSettings


CRM_BASE_URL = "https://crm.test/x"
CRM_BASE_PATH = "/x/"


class FakeCrm:
    """Serves the four CRM endpoints from dictionaries and records every call."""

    def __init__(self):
        self.leads_by_query: dict[str, list[dict]] = {}
        self.contracts_by_lead: dict[str, list[dict]] = {}
        self.contract_details: dict[str, dict] = {}
        self.jobs: dict[str, dict] = {}
        self.failing_queries: set[str] = set()
        self.unreachable_queries: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.cookies: list[str] = []

    def add_lead(self, query, lead_id, first_name, last_name, track_state=13):
        lead = {
            "id": lead_id,
            "first_name": first_name,
            "last_name": last_name,
            "track_state": track_state,
        }
        self.leads_by_query.setdefault(query, []).append(lead)
        return lead

    def add_contract(self, lead_id, contract_id, status="Processing", **detail):
        self.contracts_by_lead.setdefault(str(lead_id), []).append({"id": contract_id, "status": status})
        self.contract_details[str(contract_id)] = {"contract": {"id": contract_id, **detail}, "job_flags": []}
        return self.contract_details[str(contract_id)]

    def search_terms(self) -> list[str]:
        return [value for path, value in self.calls if path == "v2/search"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        rel = path[len(CRM_BASE_PATH):] if path.startswith(CRM_BASE_PATH) else path.lstrip("/")
        self.cookies.append(request.headers.get("cookie", ""))

        if rel == "v2/search":
            query = request.url.params.get("q", "")
            self.calls.append((rel, query))
            if query in self.unreachable_queries:
                raise httpx.ConnectError("connection refused", request=request)
            if query in self.failing_queries:
                return httpx.Response(500, json={"error": "boom"})
            return httpx.Response(200, json={"leads": self.leads_by_query.get(query, [])})

        self.calls.append((rel, ""))
        if rel.startswith("v4/contracts/by-lead/"):
            lead_id = rel.rsplit("/", 1)[-1]
            return httpx.Response(200, json=self.contracts_by_lead.get(lead_id, []))
        if rel.startswith("v4/contracts/"):
            detail = self.contract_details.get(rel.rsplit("/", 1)[-1])
            if detail is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=detail)
        if rel.startswith("v5/jobs/"):
            job = self.jobs.get(rel.rsplit("/", 1)[-1])
            if job is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(200, json=job)
        return httpx.Response(404, json={"error": "unknown path"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_crm():
    return FakeCrm()


@pytest.fixture
def crm_settings():
    return CrmSettings(base_url=CRM_BASE_URL, cookie="session=abc", concurrency=4)


@pytest.fixture
def run_with_client(fake_crm, crm_settings):
    """Run ``fn(client)`` inside a fresh event loop against the fake CRM."""

    def _run(fn, settings=None):
        async def _main():
            async with CrmClient(settings or crm_settings, transport=fake_crm.transport()) as client:
                return await fn(client)

        return asyncio.run(_main())

    return _run
