"""
Section Writer
==============

Drafts one StrategySection through the citations backend.

The instruction carries three context layers:
- Background: brief type, case metadata and the full outline with the
  current section marked
- Focus: the section's claims (with what they respond to), argumentation
  frame, facts and dispute
- Review: sections already drafted, for consistency

Source documents are the section's case files (full text from the document
store) and its authorities. After generation, re-emitted headings are
stripped and law mentions the backend did not cite are resolved in the
background so later sections and the final authority list can cover them.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .config import Settings
from .context_store import ContextStore, SectionContext
from .documents import DocumentStore
from .errors import BackendError, PipelineCancelled
from .grounding import GroundedText, SourceDocument, ground_with_citations, strip_leading_headings
from .law_refs import LawRef, find_uncited_law_mentions
from .llm.citations_client import CitationsClient
from .retrieval import LawSearchSession
from .schemas import DraftSection, FoundLaw, LawSource, Side, SourceKind

logger = logging.getLogger(__name__)


WRITER_RULES = """[Writing rules]
- Formal legal register, written in {language}
- Follow the argumentation frame and cover every listed claim
- Quote authorities only from the supplied authority documents so citations can be attached
- Quote facts only from the supplied case documents
- For a rebuttal claim, name the opposing assertion and answer it directly
- A supporting claim must reinforce the primary claim of the same section
- Do not output XML tags, emoji or decorative symbols
- Do not repeat the section heading; write the section body only
- Keep the section between 150 and 400 words"""


# =============================================================================
# Instruction
# =============================================================================

def build_section_instruction(store: ContextStore, context: SectionContext, language: str) -> str:
    section = context.section
    meta = store.case_metadata

    outline = "\n".join(
        f"  >> {entry.heading}   <- you are writing this section" if entry.is_current else f"  {entry.heading}"
        for entry in context.outline
    )
    brief_lines = [f"  Brief type: {store.brief_type}"]
    for label, value in (
        ("Case number", meta.case_number),
        ("Court", meta.court),
        ("Case type", meta.case_type),
        ("Client role", meta.client_role),
        ("Instructions from counsel", meta.case_instructions),
    ):
        if value:
            brief_lines.append(f"  {label}: {value}")

    claim_lines = []
    for claim in context.claims:
        side = "ours" if claim.side == Side.OURS else "theirs"
        line = f"  {claim.id}: {claim.statement} ({side} | {claim.claim_type.value})"
        target = store.claim(claim.responds_to)
        if target:
            line += f'\n    -> responds to {target.id} "{target.statement[:50]}"'
        claim_lines.append(line)

    basis = [store.law(law_id).label if store.has_law(law_id) else law_id for law_id in section.argumentation.legal_basis]

    parts = [
        f"You are a senior litigator. Draft the section \"{section.heading}\" of the brief "
        "from the argumentation structure and the supplied source documents.",
        "[Brief]\n" + "\n".join(brief_lines) + f"\n  Outline:\n{outline}",
        "[Claims for this section]\n" + ("\n".join(claim_lines) or "  (no specific claims)"),
        "[Argumentation]\n"
        f"  Legal basis: {', '.join(basis) or '(none)'}\n"
        f"  Fact application: {section.argumentation.fact_application}\n"
        f"  Conclusion: {section.argumentation.conclusion}",
    ]
    if section.legal_reasoning:
        parts.append(f"[Legal reasoning]\n  {section.legal_reasoning}")
    if section.facts_to_use:
        parts.append("[Facts to use]\n" + "\n".join(f"  - {fact}" for fact in section.facts_to_use))
    if context.dispute:
        parts.append(
            "[Issue]\n"
            f"  {context.dispute.title}\n"
            f"  Our position: {context.dispute.our_position}\n"
            f"  Their position: {context.dispute.their_position}"
        )
    if context.completed_sections:
        completed = "\n\n".join(
            f"[{_draft_heading(d.section, d.subsection)}]\n{d.content}" for d in context.completed_sections
        )
        parts.append(f"[Completed sections] (stay consistent with them)\n{completed}")
    parts.append(WRITER_RULES.format(language=language))
    return "\n\n".join(parts)


def _draft_heading(section: str, subsection: Optional[str]) -> str:
    return f"{section} > {subsection}" if subsection else section


async def gather_section_documents(
    store: ContextStore,
    context: SectionContext,
    documents: DocumentStore,
    max_file_content: int = 20000,
) -> List[SourceDocument]:
    """Case files first, then authorities; documents without text are skipped"""
    sources: List[SourceDocument] = []
    for file_id in context.file_ids:
        text = await documents.get_text(file_id)
        if not text or not text.strip():
            logger.debug(f"No text for file {file_id}, not supplied to the writer")
            continue
        meta = store.document(file_id)
        sources.append(SourceDocument(
            source_id=file_id,
            title=meta.filename if meta else file_id,
            content=text[:max_file_content],
            kind=SourceKind.FILE,
        ))
    for law in context.laws:
        if law.content.strip():
            sources.append(SourceDocument(source_id=law.id, title=law.label, content=law.content, kind=SourceKind.LAW))
    return sources


async def write_section(
    client: CitationsClient,
    store: ContextStore,
    index: int,
    documents: DocumentStore,
    settings: Settings,
    cancel: Optional[asyncio.Event] = None,
) -> Tuple[DraftSection, GroundedText]:
    """
    Draft sections[index].

    Returns (DraftSection, GroundedText) - the grounded text carries usage
    and truncation for the caller.
    """
    context = store.get_section_context(index)
    section = context.section
    sources = await gather_section_documents(store, context, documents, settings.max_file_content_length)
    instruction = build_section_instruction(store, context, settings.brief_language)

    grounded = await ground_with_citations(
        client,
        sources,
        instruction,
        max_chunk_length=settings.max_chunk_length,
        max_tokens=settings.writer_max_tokens,
        cancel=cancel,
    )
    if grounded.truncated:
        logger.warning(f"Section {section.id} output truncated at {settings.writer_max_tokens} tokens")
    grounded = strip_leading_headings(grounded, [section.section, section.subsection])

    draft = DraftSection(
        section_id=section.id,
        section=section.section,
        subsection=section.subsection,
        dispute_id=section.dispute_id,
        content=grounded.text,
        segments=grounded.segments,
        citations=grounded.citations,
    )
    logger.info(
        f"Section {index + 1}/{len(store.sections)} ({section.id}) drafted: "
        f"{len(draft.content)} chars, {len(draft.citations)} citations"
    )
    return draft, grounded


# =============================================================================
# Uncited law mentions
# =============================================================================

class LawMentionResolver:
    """
    Background resolution of law mentions the writer produced without a
    citation.

    Each task fetches its references completely, then writes them to the
    store in one call and fires the authorities-updated callback.
    """

    def __init__(
        self,
        store: ContextStore,
        session: Optional[LawSearchSession],
        on_updated: Optional[Callable[[List[FoundLaw]], Awaitable[None]]] = None,
        cancel: Optional[asyncio.Event] = None,
    ):
        self.store = store
        self.session = session
        self.on_updated = on_updated
        self.cancel = cancel
        self._tasks: List[asyncio.Task] = []
        self._requested: Set[str] = set()
        self.resolved: Dict[str, FoundLaw] = {}

    def uncited_refs(self, draft: DraftSection) -> List[LawRef]:
        return [
            ref for ref in find_uncited_law_mentions(draft.content, draft.citations)
            if not self.store.has_law(ref.id) and ref.id not in self._requested
        ]

    def schedule(self, draft: DraftSection) -> Optional[asyncio.Task]:
        if self.session is None:
            return None
        refs = self.uncited_refs(draft)
        if not refs:
            return None
        self._requested.update(ref.id for ref in refs)
        logger.info(f"Section {draft.section_id}: resolving {len(refs)} uncited law mentions in background")
        task = asyncio.create_task(self._resolve(refs))
        self._tasks.append(task)
        return task

    async def _resolve(self, refs: List[LawRef]) -> List[FoundLaw]:
        try:
            hits = await self.session.lookup_by_ids([ref.id for ref in refs], cancel=self.cancel)
        except BackendError as e:
            logger.warning(f"Background lookup of {len(refs)} law mentions failed: {e}")
            return []

        laws = [hit.to_found_law(LawSource.MENTIONED) for hit in hits]
        added = self.store.add_found_laws(laws)
        for law in added:
            self.resolved[law.id] = law
        if added and self.on_updated:
            await self.on_updated(self.store.found_laws)
        return added

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def drain(self) -> List[FoundLaw]:
        """Wait for every scheduled task; returns all laws they added"""
        if not self._tasks:
            return []
        outcomes = await asyncio.gather(*self._tasks, return_exceptions=True)
        added: List[FoundLaw] = []
        for outcome in outcomes:
            if isinstance(outcome, (PipelineCancelled, asyncio.CancelledError)):
                continue
            if isinstance(outcome, BaseException):
                logger.error(f"Background law resolution failed: {type(outcome).__name__}: {outcome}")
                continue
            added.extend(outcome)
        self._tasks.clear()
        return added

    async def cancel_all(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
