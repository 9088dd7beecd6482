"""
Legal Research Stage
====================

Deterministic authority fetch before the reasoning loop:

1. Mentioned authorities from the legal issues, in fetch order:
   session cache -> batch lookup by canonical ID -> individual search for
   the references the batch did not return
2. User-supplied references (source: user_manual)
3. Planned searches, run concurrently

Results are collected in full and handed to the Context Store in one write.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import BackendError, PipelineCancelled
from .law_refs import LawRef, parse_law_ref
from .retrieval import LawHit, LawSearchSession
from .schemas import FoundLaw, LawSource, LegalIssue

logger = logging.getLogger(__name__)


@dataclass
class ResearchResult:
    laws: List[FoundLaw] = field(default_factory=list)
    unresolved: List[str] = field(default_factory=list)
    searches: Dict[str, int] = field(default_factory=dict)

    def add(self, hits: Iterable[LawHit], source: LawSource) -> None:
        known = {law.id for law in self.laws}
        for hit in hits:
            if hit.id not in known:
                self.laws.append(hit.to_found_law(source))
                known.add(hit.id)


def collect_mentioned_refs(issues: Iterable[LegalIssue]) -> List[str]:
    """Raw law references of every issue, deduplicated in order"""
    return list(dict.fromkeys(ref.strip() for issue in issues for ref in issue.mentioned_laws if ref.strip()))


async def _search_one(
    session: LawSearchSession,
    query: str,
    ref: Optional[LawRef],
    cancel: Optional[asyncio.Event],
) -> Optional[LawHit]:
    hits = await session.search(query, limit=1 if ref else 3, cancel=cancel)
    if not hits:
        return None
    if ref is not None:
        exact = next((hit for hit in hits if hit.id == ref.id), None)
        return exact or hits[0]
    return hits[0]


async def fetch_law_refs(
    session: LawSearchSession,
    raw_refs: List[str],
    cancel: Optional[asyncio.Event] = None,
) -> Tuple[List[LawHit], List[str]]:
    """
    Resolve raw references to hits.

    Returns (hits, unresolved raw references).
    """
    parsed: Dict[str, Optional[LawRef]] = {raw: parse_law_ref(raw) for raw in raw_refs}
    ids = [ref.id for ref in parsed.values() if ref is not None]

    found: Dict[str, LawHit] = {}
    if ids:
        try:
            for hit in await session.lookup_by_ids(ids, cancel=cancel):
                found[hit.id] = hit
        except BackendError as e:
            logger.warning(f"Batch lookup of {len(ids)} authorities failed, falling back to search: {e}")

    pending = [raw for raw, ref in parsed.items() if ref is None or ref.id not in found]
    outcomes = await asyncio.gather(
        *(_search_one(session, parsed[raw].label if parsed[raw] else raw, parsed[raw], cancel) for raw in pending),
        return_exceptions=True,
    )

    unresolved: List[str] = []
    for raw, outcome in zip(pending, outcomes):
        if isinstance(outcome, (PipelineCancelled, asyncio.CancelledError)):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.warning(f"Search fallback for '{raw}' failed: {outcome}")
            unresolved.append(raw)
        elif outcome is None:
            unresolved.append(raw)
        else:
            found.setdefault(outcome.id, outcome)

    ordered = [found[ref.id] for ref in parsed.values() if ref is not None and ref.id in found]
    ordered += [hit for hit in found.values() if hit not in ordered]
    return ordered, unresolved


async def run_planned_searches(
    session: LawSearchSession,
    queries: List[str],
    limit: int,
    cancel: Optional[asyncio.Event] = None,
) -> Dict[str, List[LawHit]]:
    """Run every query concurrently; failed queries yield no hits"""
    queries = list(dict.fromkeys(q.strip() for q in queries if q.strip()))
    outcomes = await asyncio.gather(
        *(session.search(query, limit=limit, cancel=cancel) for query in queries),
        return_exceptions=True,
    )
    results: Dict[str, List[LawHit]] = {}
    for query, outcome in zip(queries, outcomes):
        if isinstance(outcome, (PipelineCancelled, asyncio.CancelledError)):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.warning(f"Planned search '{query[:40]}' failed: {outcome}")
            results[query] = []
        else:
            results[query] = outcome
    return results


async def run_legal_research(
    session: Optional[LawSearchSession],
    issues: List[LegalIssue],
    user_law_refs: List[str],
    search_queries: List[str],
    search_limit: int = 3,
    cancel: Optional[asyncio.Event] = None,
) -> ResearchResult:
    result = ResearchResult()
    mentioned = collect_mentioned_refs(issues)
    if session is None:
        if mentioned or user_law_refs or search_queries:
            logger.warning("No law search session, skipping authority research")
        result.unresolved = mentioned + list(user_law_refs)
        return result

    if mentioned:
        hits, unresolved = await fetch_law_refs(session, mentioned, cancel)
        result.add(hits, LawSource.MENTIONED)
        result.unresolved.extend(unresolved)

    manual = [ref.strip() for ref in user_law_refs if ref.strip()]
    if manual:
        hits, unresolved = await fetch_law_refs(session, manual, cancel)
        result.add(hits, LawSource.USER_MANUAL)
        result.unresolved.extend(unresolved)

    if search_queries:
        planned = await run_planned_searches(session, search_queries, search_limit, cancel)
        for query, hits in planned.items():
            result.searches[query] = len(hits)
            result.add(hits, LawSource.SEARCH)

    logger.info(
        f"Legal research: {len(result.laws)} authorities, "
        f"{len(result.unresolved)} unresolved, {len(result.searches)} searches"
    )
    return result
