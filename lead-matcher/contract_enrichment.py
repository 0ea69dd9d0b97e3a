"""
Contract enrichment for grouped leads and flattening into result rows.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from crm_client import CrmClient
from lead_aggregator import LeadIdentity


logger = logging.getLogger(__name__)

TOTAL_COMPUTED = "computed"
TOTAL_UNDEFINED_DISCOUNT = "undefined_discount_rate"
TOTAL_NO_CONTRACTS = "no_contracts"
TOTAL_NON_FINITE = "non_finite_amount"


def _as_number(value: Any) -> Optional[float]:
    """
    Coerce a CRM amount to a number.

    Missing, blank and non-numeric values count as 0. Infinite, NaN and
    out-of-range values return None.
    """
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = value if isinstance(value, (int, float)) else float(str(value).strip())
        if math.isfinite(number):
            return number
    except ValueError:
        return 0
    except OverflowError:
        pass
    return None


@dataclass(frozen=True)
class ContractSummary:
    id: Any
    subtotal: Optional[float]
    total: Optional[float]
    rep_price_adjustment: Optional[float]
    ach_discount: Optional[float]
    discount_rate: Optional[float]
    total_status: str = TOTAL_COMPUTED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subtotal": self.subtotal,
            "total": self.total,
            "totalStatus": self.total_status,
            "discount": {
                "rep_price_adjustment": self.rep_price_adjustment,
                "ach_discount": self.ach_discount,
                "discount_rate": self.discount_rate,
            },
        }


def summarize_contract(contract_id: Any, detail: Optional[Mapping]) -> ContractSummary:
    """
    Compute the pre-discount total implied by a contract detail payload.

        normalized = (1 - discount_amount) * 100
        total      = subtotal / normalized * 100 + rep_price_adjustment - ach_discount

    A discount rate of exactly 1 leaves the total undefined; such contracts get
    ``total=None`` and the ``undefined_discount_rate`` status. Amounts that are
    not finite, or a total that overflows, give ``total=None`` and the
    ``non_finite_amount`` status; the offending amounts are reported as None.
    """
    contract = (detail or {}).get("contract") or {}
    rep = _as_number(contract.get("rep_price_adjustment"))
    ach = _as_number(contract.get("ach_discount"))
    subtotal = _as_number(contract.get("subtotal"))
    rate = _as_number(contract.get("discount_amount"))

    total: Optional[float] = None
    if None in (rep, ach, subtotal, rate):
        logger.warning("Contract %s carries a non-finite amount; total left undefined", contract_id)
        status = TOTAL_NON_FINITE
    elif rate == 1:
        logger.warning("Contract %s has a 100%% discount rate; total left undefined", contract_id)
        status = TOTAL_UNDEFINED_DISCOUNT
    else:
        normalized = (1 - rate) * 100
        total = subtotal / normalized * 100 + rep - ach
        status = TOTAL_COMPUTED
        if not math.isfinite(total):
            logger.warning("Contract %s total overflows; total left undefined", contract_id)
            total = None
            status = TOTAL_NON_FINITE

    return ContractSummary(
        id=contract_id,
        subtotal=subtotal,
        total=total,
        rep_price_adjustment=rep,
        ach_discount=ach,
        discount_rate=rate,
        total_status=status,
    )


async def enrich_lead_contracts(client: CrmClient, lead_id: Any) -> list[ContractSummary]:
    """List a lead's contracts, then fetch every detail concurrently; keeps list order."""
    listing = await client.list_contracts_by_lead(lead_id)
    contract_ids = [contract.get("id") for contract in listing.payload or []]

    async def _summarize(contract_id: Any) -> ContractSummary:
        detail = await client.get_contract_detail(contract_id)
        return summarize_contract(contract_id, detail.payload)

    return list(await asyncio.gather(*(_summarize(contract_id) for contract_id in contract_ids)))


async def build_contract_map(
    client: CrmClient,
    groups: Mapping[str, list[LeadIdentity]],
) -> dict[Any, list[ContractSummary]]:
    """Enrich each distinct lead once, however many groups reference it."""
    lead_ids = list(dict.fromkeys(lead.id for leads in groups.values() for lead in leads))
    enriched = await asyncio.gather(*(enrich_lead_contracts(client, lead_id) for lead_id in lead_ids))
    return dict(zip(lead_ids, enriched))


SNAKE_CASE_KEYS = {
    "query": "query",
    "lead_id": "lead_id",
    "lead_name": "lead_name",
    "contract_id": "contract_id",
    "subtotal": "subtotal",
    "total": "total",
    "total_status": "total_status",
    "rep_discount": "rep_discount",
    "ach_discount": "ach_discount",
    "discount_rate": "discount_rate",
}
CAMEL_CASE_KEYS = {
    "query": "searchQuery",
    "lead_id": "leadId",
    "lead_name": "leadName",
    "contract_id": "contractId",
    "subtotal": "subtotal",
    "total": "total",
    "total_status": "totalStatus",
    "rep_discount": "repDiscount",
    "ach_discount": "achDiscount",
    "discount_rate": "discountRate",
}


@dataclass(frozen=True)
class ResultRow:
    query: str
    lead_id: Any
    lead_name: str
    contract_id: Any = None
    subtotal: Optional[float] = 0
    total: Optional[float] = 0
    total_status: str = TOTAL_NO_CONTRACTS
    rep_discount: Optional[float] = 0
    ach_discount: Optional[float] = 0
    discount_rate: Optional[float] = 0

    def to_dict(self, camel_case: bool = False) -> dict:
        keys = CAMEL_CASE_KEYS if camel_case else SNAKE_CASE_KEYS
        return {keys[name]: getattr(self, name) for name in SNAKE_CASE_KEYS}


def assemble_rows(
    groups: Mapping[str, list[LeadIdentity]],
    contract_map: Mapping[Any, list[ContractSummary]],
) -> list[ResultRow]:
    """One row per (lead, contract); a lead without contracts still gets one zeroed row."""
    rows: list[ResultRow] = []
    for query, leads in groups.items():
        for lead in leads:
            contracts = contract_map.get(lead.id) or []
            if not contracts:
                rows.append(ResultRow(query=query, lead_id=lead.id, lead_name=lead.name))
                continue
            for contract in contracts:
                rows.append(ResultRow(
                    query=query,
                    lead_id=lead.id,
                    lead_name=lead.name,
                    contract_id=contract.id,
                    subtotal=contract.subtotal,
                    total=contract.total,
                    total_status=contract.total_status,
                    rep_discount=contract.rep_price_adjustment,
                    ach_discount=contract.ach_discount,
                    discount_rate=contract.discount_rate,
                ))
    return rows
