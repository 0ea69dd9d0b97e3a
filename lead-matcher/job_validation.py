"""
Job validation chains.

Each chain is a strict sequence of CRM lookups (search -> contracts ->
contract detail -> job) ending in a JobSummary. Batch validation runs
independent chains concurrently and isolates their failures.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Iterable, Mapping, Optional

from crm_client import CrmClient
from lead_resolver import EXACT_MATCH, resolve_name
from name_parsing import segment_names


logger = logging.getLogger(__name__)

JOB_ID_RE = re.compile(r"Job\s*#(\d+)", re.IGNORECASE)
NO_FLAGS = "No flags found"


class ValidationFailure(Exception):
    """A chain precondition failed; carries the HTTP status to report."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def latest_job_flag(contract_detail: Optional[Mapping]) -> Any:
    job_flags = (contract_detail or {}).get("job_flags") or []
    first = job_flags[0] if job_flags and isinstance(job_flags[0], dict) else {}
    flags = first.get("flags")
    if isinstance(flags, list) and flags:
        return flags[-1]
    return NO_FLAGS


def first_job_id(contract_detail: Optional[Mapping]) -> Any:
    job_flags = (contract_detail or {}).get("job_flags") or []
    if job_flags and isinstance(job_flags[0], dict):
        return job_flags[0].get("job_id")
    return None


def build_job_summary(job: Optional[Mapping], contract_detail: Optional[Mapping]) -> dict:
    job = job or {}
    lead = job.get("lead") or {}
    pricing = (contract_detail or {}).get("estimate_package_calculation_result") or {}
    return {
        "leadId": job.get("lead_id"),
        "leadSurname": lead.get("lastName"),
        "contractId": job.get("contract_id"),
        "contractAmount": job.get("contract_amount"),
        "jobId": job.get("id"),
        "jobFlags": latest_job_flag(contract_detail),
        "outsideRep": lead.get("outsideRep"),
        "discountAmount": pricing.get("rep_price_adjustment"),
        "discountDesc": pricing.get("rep_price_discount_description"),
    }


async def validate_by_job_id(client: CrmClient, job_id: str) -> dict:
    job = await client.get_job_by_id(job_id)
    if not job.ok or not job.payload:
        raise ValidationFailure(404, "Job not found")

    contract = await client.get_contract_detail(job.payload.get("contract_id"))
    if not contract.ok or not contract.payload:
        raise ValidationFailure(404, "Contract not found")

    return build_job_summary(job.payload, contract.payload)


async def validate_by_lead_name(
    client: CrmClient,
    customer_name: str,
    track_states: Optional[Iterable[int]] = None,
    contract_statuses: Optional[Iterable[str]] = None,
) -> dict:
    """
    Validate a customer by name.

    The name must resolve as an exact match, its first lead must hold exactly
    one contract in an allowed status, and that contract must reference a job.
    """
    names = segment_names(customer_name, split_sub_entries=True)
    if not names:
        raise ValidationFailure(400, "Customer name is not an exact match")

    resolution = await resolve_name(client, names[0], track_states=track_states)
    if resolution.status != EXACT_MATCH:
        raise ValidationFailure(400, "Customer name is not an exact match")

    lead_id = resolution.leads[0].id if resolution.leads else None
    if not lead_id:
        raise ValidationFailure(400, "Lead ID not found in response")

    contracts = await client.list_contracts_by_lead(lead_id, statuses=contract_statuses)
    if len(contracts.payload or []) != 1:
        raise ValidationFailure(400, "No contract or multiple contracts found for this lead")

    contract = await client.get_contract_detail(contracts.payload[0].get("id"))
    job_id = first_job_id(contract.payload)
    if not job_id:
        raise ValidationFailure(400, "Job ID not found in contract")

    job = await client.get_job_by_id(job_id)
    return build_job_summary(job.payload, contract.payload)


async def validate_entry(
    client: CrmClient,
    customer: str,
    track_states: Optional[Iterable[int]] = None,
    contract_statuses: Optional[Iterable[str]] = None,
) -> dict:
    """Validate one batch entry; failures become an error result instead of raising."""
    try:
        match = JOB_ID_RE.search(customer)
        if match:
            return await validate_by_job_id(client, match.group(1))
        return await validate_by_lead_name(
            client,
            customer,
            track_states=track_states,
            contract_statuses=contract_statuses,
        )
    except ValidationFailure as exc:
        return {"error": f"Failed ({exc.status_code})", "detail": {"error": exc.message}}
    except Exception as exc:
        logger.exception("Validation of %r raised", customer)
        return {"error": "Exception", "detail": str(exc)}


async def validate_batch(
    client: CrmClient,
    entries: list[Mapping],
    track_states: Optional[Iterable[int]] = None,
    contract_statuses: Optional[Iterable[str]] = None,
) -> dict[str, dict]:
    """Validate every entry concurrently; the result map is keyed by each entry's row."""
    states = tuple(track_states) if track_states is not None else None
    statuses = tuple(contract_statuses) if contract_statuses is not None else None

    async def _one(entry: Mapping) -> tuple[str, dict]:
        customer = str(entry.get("customerName") or "")
        result = await validate_entry(client, customer, states, statuses)
        return str(entry.get("row")), {"customer": customer, "result": result}

    pairs = await asyncio.gather(*(_one(entry) for entry in entries))
    return dict(pairs)
