"""
Identity aggregation across resolved names.

Resolutions are folded one at a time into an immutable AggregateState. Each
fold returns a new state, so resolutions may be computed concurrently as long
as they are folded in a single pass afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from functools import reduce
from typing import Any, Iterable

from crm_client import LeadHit
from lead_resolver import Resolution


GROUP_KEY_SEPARATOR = ", "


@dataclass(frozen=True)
class LeadIdentity:
    id: Any
    name: str
    matched_by: tuple[str, ...] = ()

    def with_query(self, query: str) -> "LeadIdentity":
        if query in self.matched_by:
            return self
        return replace(self, matched_by=self.matched_by + (query,))


@dataclass(frozen=True)
class AggregateState:
    identities: dict = field(default_factory=dict)
    query_groups: dict = field(default_factory=dict)

    def query_popularity(self, query: str) -> int:
        return len(self.query_groups.get(query, ()))


def fold_resolution(state: AggregateState, resolution: Resolution) -> AggregateState:
    """Merge one resolution's hits into a new state; repeated hits are idempotent."""
    if resolution.query is None or not resolution.leads:
        return state

    query = resolution.query
    identities = dict(state.identities)
    query_groups = dict(state.query_groups)
    group: tuple[LeadHit, ...] = query_groups.get(query, ())
    group_ids = {lead.id for lead in group}

    for lead in resolution.leads:
        current = identities.get(lead.id)
        if current is None:
            current = LeadIdentity(id=lead.id, name=lead.full_name)
        identities[lead.id] = current.with_query(query)

        if lead.id not in group_ids:
            group = group + (lead,)
            group_ids.add(lead.id)

    query_groups[query] = group
    return AggregateState(identities=identities, query_groups=query_groups)


def aggregate(resolutions: Iterable[Resolution]) -> AggregateState:
    return reduce(fold_resolution, resolutions, AggregateState())


def group_key(state: AggregateState, identity: LeadIdentity) -> str:
    """Join the lead's queries, most popular first; ties keep first-seen order."""
    queries = sorted(identity.matched_by, key=lambda query: -state.query_popularity(query))
    return GROUP_KEY_SEPARATOR.join(queries)


def group_by_matched_queries(state: AggregateState) -> dict[str, list[LeadIdentity]]:
    groups: dict[str, list[LeadIdentity]] = {}
    for identity in state.identities.values():
        groups.setdefault(group_key(state, identity), []).append(identity)
    return groups
