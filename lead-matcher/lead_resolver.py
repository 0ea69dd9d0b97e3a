"""
Lead resolution against the CRM search endpoint.

Two strategies:
- progressive truncation: search a name, then ever-shorter word prefixes of it,
  stopping at the first prefix that returns leads;
- candidate fan-out: search every derived candidate term once, in parallel,
  and classify the record by how many candidates hit.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from crm_client import CrmClient, LeadHit
from name_parsing import SearchCandidate


logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 3

EXACT_MATCH = "exact match"
PARTIAL_MATCH = "partial match"
NO_MATCH = "no match"

FOUND = "found"
MAYBE = "maybe"
NOT_FOUND = "not found"


@dataclass(frozen=True)
class Resolution:
    name: str
    status: str
    query: Optional[str] = None
    leads: tuple[LeadHit, ...] = ()

    def to_dict(self) -> dict:
        return {
            "query": self.name,
            "status": self.status,
            "leads": [lead.to_dict() for lead in self.leads],
        }


def prefix_queries(name: str) -> list[str]:
    """Word prefixes of ``name``, longest first, skipping those under MIN_QUERY_LENGTH."""
    words = str(name or "").split()
    prefixes = [" ".join(words[:count]) for count in range(len(words), 0, -1)]
    return [prefix for prefix in prefixes if len(prefix) >= MIN_QUERY_LENGTH]


def classify_match(matched_words: int, total_words: int) -> str:
    if matched_words <= 0:
        return NO_MATCH
    return EXACT_MATCH if matched_words == total_words else PARTIAL_MATCH


async def resolve_name(
    client: CrmClient,
    name: str,
    track_states: Optional[Iterable[int]] = None,
) -> Resolution:
    """
    Resolve one name by progressive truncation.

    Each step depends on the previous one returning nothing, so the searches
    run strictly in order. The first non-empty hit wins.
    """
    total_words = len(str(name or "").split())
    for query in prefix_queries(name):
        logger.debug("Trying %r for %r", query, name)
        result = await client.search_leads_by_name(query, track_states=track_states)
        if result.ok and result.payload:
            status = classify_match(len(query.split()), total_words)
            return Resolution(name=name, status=status, query=query, leads=tuple(result.payload))
    return Resolution(name=name, status=NO_MATCH)


async def resolve_names(
    client: CrmClient,
    names: list[str],
    track_states: Optional[Iterable[int]] = None,
) -> list[Resolution]:
    """Resolve independent names concurrently; results keep input order."""
    states = tuple(track_states) if track_states is not None else None
    return list(await asyncio.gather(*(resolve_name(client, name, states) for name in names)))


@dataclass(frozen=True)
class CandidateHit:
    candidate: SearchCandidate
    count: int

    def to_dict(self) -> dict:
        return {**self.candidate.to_dict(), "count": self.count}


@dataclass(frozen=True)
class CategoryResolution:
    status: str
    cause: str = ""
    matches: tuple[CandidateHit, ...] = ()

    @property
    def summary(self) -> str:
        return f"{self.status} by {self.cause}" if self.cause else self.status

    def to_dict(self) -> dict:
        return {
            "status": self.summary,
            "matches": [hit.to_dict() for hit in self.matches],
        }


def classify_candidate_hits(hits: list[CandidateHit]) -> CategoryResolution:
    matches = tuple(hit for hit in hits if hit.count > 0)
    if not matches:
        return CategoryResolution(status=NOT_FOUND)

    if len(matches) == 1:
        unique = next((hit for hit in matches if hit.count == 1), matches[0])
        return CategoryResolution(status=FOUND, cause=unique.candidate.category, matches=matches)

    categories = list(dict.fromkeys(hit.candidate.category for hit in matches))
    return CategoryResolution(status=MAYBE, cause=", ".join(categories), matches=matches)


async def resolve_candidates(client: CrmClient, candidates: list[SearchCandidate]) -> CategoryResolution:
    """Search each candidate term once, all in parallel, and classify the outcome."""

    async def _count(candidate: SearchCandidate) -> CandidateHit:
        result = await client.search_leads_by_name(candidate.term)
        return CandidateHit(candidate=candidate, count=len(result.payload or []))

    hits = await asyncio.gather(*(_count(candidate) for candidate in candidates))
    return classify_candidate_hits(list(hits))
