"""
Reasoning Tools
===============

Tool set of the strategy reasoning loop:
- search_law: hybrid authority search (capped per run); hits are cached in
  the Context Store as supplemented authorities
- read_file: full text of one case document
- finalize_strategy: terminal tool; records the reasoning summary and looks up
  any further authority IDs the model names
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .agent import Tool, ToolName, ToolRegistry, ToolResult
from .context_store import ContextStore
from .documents import DocumentStore
from .errors import BackendError, ToolExecutionError
from .law_refs import truncate_law_content
from .retrieval import LawHit, LawSearchSession
from .schemas import FoundLaw, LawSource

logger = logging.getLogger(__name__)


@dataclass
class ReasoningState:
    """What the reasoning loop produced besides its messages"""
    summary: str = ""
    supplemented_law_ids: List[str] = field(default_factory=list)
    candidates: Dict[str, LawHit] = field(default_factory=dict)
    queries: List[str] = field(default_factory=list)
    finalized: bool = False


SEARCH_LAW_PARAMETERS = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "Law name + article (e.g. 民法第184條) or a legal concept"},
        "purpose": {"type": "string", "description": "What the result should support"},
        "limit": {"type": "integer", "description": "Max results (default 3)"},
    },
    "required": ["query"],
}

READ_FILE_PARAMETERS = {
    "type": "object",
    "properties": {
        "file_id": {"type": "string", "description": "Case document ID"},
    },
    "required": ["file_id"],
}

FINALIZE_PARAMETERS = {
    "type": "object",
    "properties": {
        "reasoning_summary": {"type": "string", "description": "Overall argument strategy"},
        "supplemented_law_ids": {
            "type": "array",
            "items": {"type": "string"},
            "description": "IDs of searched authorities the brief should rely on",
        },
    },
    "required": ["reasoning_summary"],
}


def format_hits(query: str, hits: List[LawHit], max_content: int) -> str:
    if not hits:
        return f"No authorities found for '{query}'. Try a different wording or a specific article."
    lines = [f"{len(hits)} result(s) for '{query}':"]
    for hit in hits:
        lines.append(f"[{hit.id}] {hit.law_name}{hit.article_no}\n{truncate_law_content(hit.content, max_content)}")
    return "\n\n".join(lines)


def build_reasoning_registry(
    store: ContextStore,
    session: Optional[LawSearchSession],
    documents: DocumentStore,
    state: ReasoningState,
    max_searches: int = 6,
    default_limit: int = 3,
    max_law_content: int = 600,
    max_file_content: int = 20000,
    cancel: Optional[asyncio.Event] = None,
) -> ToolRegistry:
    """Bind the reasoning tools to one run's store, search session and documents"""

    def supplement(hits: List[LawHit]) -> List[FoundLaw]:
        added = store.add_found_laws([hit.to_found_law(LawSource.SUPPLEMENTED) for hit in hits])
        for law in added:
            if law.id not in state.supplemented_law_ids:
                state.supplemented_law_ids.append(law.id)
        return added

    async def search_law(args: Dict[str, Any]) -> ToolResult:
        query = str(args.get("query") or "").strip()
        if not query:
            return ToolResult("search_law requires a non-empty 'query'", success=False)
        if session is None:
            return ToolResult("Authority search is not available in this run", success=False)

        try:
            hits = await session.search(query, limit=args.get("limit") or default_limit, cancel=cancel)
        except BackendError as e:
            raise ToolExecutionError(f"search backend error: {e}")

        # Written back only once the search has fully resolved
        state.queries.append(query)
        for hit in hits:
            state.candidates.setdefault(hit.id, hit)
        added = supplement(hits)
        logger.info(
            f"search_law '{query[:40]}' ({str(args.get('purpose') or '')[:40]}): "
            f"{len(hits)} hits, {len(added)} new"
        )
        return ToolResult(format_hits(query, hits, max_law_content))

    async def read_file(args: Dict[str, Any]) -> ToolResult:
        file_id = str(args.get("file_id") or "")
        text = await documents.get_text(file_id)
        if text is None:
            known = ", ".join(d.id for d in store.documents) or "(none)"
            return ToolResult(f"Unknown file '{file_id}'. Known files: {known}", success=False)
        document = store.document(file_id)
        title = document.filename if document else file_id
        return ToolResult(f"# {title}\n\n{text[:max_file_content]}")

    async def finalize_strategy(args: Dict[str, Any]) -> ToolResult:
        summary = str(args.get("reasoning_summary") or "").strip()
        if not summary:
            return ToolResult("finalize_strategy requires 'reasoning_summary'", success=False)

        requested = [str(i) for i in (args.get("supplemented_law_ids") or []) if i]
        unknown = [i for i in requested if i not in state.candidates and not store.has_law(i)]
        if unknown and session is not None:
            try:
                supplement(await session.lookup_by_ids(unknown, cancel=cancel))
            except BackendError as e:
                logger.warning(f"Lookup of supplemented authorities failed: {e}")

        state.summary = summary
        state.finalized = True
        store.set_reasoning(summary, state.supplemented_law_ids)
        return ToolResult(
            f"Strategy reasoning finalized with {len(state.supplemented_law_ids)} supplemented authorities."
        )

    return ToolRegistry([
        Tool(
            name=ToolName.SEARCH_LAW,
            description="Search statutes and articles. Returns canonical IDs and article text.",
            parameters=SEARCH_LAW_PARAMETERS,
            handler=search_law,
            max_calls=max_searches,
        ),
        Tool(
            name=ToolName.READ_FILE,
            description="Read the full text of one case document by ID.",
            parameters=READ_FILE_PARAMETERS,
            handler=read_file,
        ),
        Tool(
            name=ToolName.FINALIZE_STRATEGY,
            description="Finish the reasoning phase. Call exactly once when the analysis is complete.",
            parameters=FINALIZE_PARAMETERS,
            handler=finalize_strategy,
        ),
    ])
