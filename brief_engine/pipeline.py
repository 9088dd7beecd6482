"""
Brief Pipeline
==============

Runs one brief generation end to end:

    case analysis -> legal research -> strategy (reasoning loop + JSON plan)
    -> drafting (section by section) -> review -> done

Every transition is reported as a ProgressEvent. The run owns its Context
Store and its law search session; persistence happens only through the
callbacks.

Failure policy:
- No legal issues or no source material at all: SetupError (fatal)
- A section whose drafting fails is skipped and listed in `failed_sections`
- Cancellation stops at the next backend call; sections already drafted are
  kept and returned
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .agent import TerminationReason
from .cancellation import raise_if_cancelled
from .config import Settings, get_settings
from .context_store import ContextStore
from .documents import DocumentStore, InMemoryDocumentStore
from .errors import BackendError, PipelineCancelled, SetupError
from .events import PipelineCallbacks, ProgressEmitter
from .llm.citations_client import CitationsClient
from .llm.gateway import GatewayClient, UsageTotals
from .research import run_legal_research
from .retrieval import LawSearchSession
from .review import run_review
from .schemas import (
    CaseDocument,
    CaseMetadata,
    InformationGap,
    LawSource,
    LegalIssue,
    PipelineStage,
    ProgressEventKind,
    ReviewResult,
)
from .strategy import run_reasoning, run_structured_output, summarize_plan
from .writer import LawMentionResolver, write_section

logger = logging.getLogger(__name__)


class PipelineInput(BaseModel):
    """Case-intake seed for one run"""
    legal_issues: List[LegalIssue] = Field(default_factory=list)
    case_summary: str = ""
    parties: Dict[str, str] = Field(default_factory=dict)
    case_metadata: CaseMetadata = Field(default_factory=CaseMetadata)
    brief_type: str = "complaint"
    documents: List[CaseDocument] = Field(default_factory=list)
    document_texts: Dict[str, str] = Field(default_factory=dict, description="Full text by document ID")
    information_gaps: List[InformationGap] = Field(default_factory=list)
    user_law_refs: List[str] = Field(default_factory=list)
    search_queries: List[str] = Field(default_factory=list)


@dataclass
class PipelineResult:
    store: ContextStore
    review: Optional[ReviewResult] = None
    failed_sections: List[str] = field(default_factory=list)
    reasoning_rounds: int = 0
    reasoning_termination: Optional[TerminationReason] = None
    usage: UsageTotals = field(default_factory=UsageTotals)
    cancelled: bool = False

    @property
    def draft_sections(self):
        return self.store.draft_sections


def check_source_material(request: PipelineInput) -> List[str]:
    problems = []
    if not request.legal_issues:
        problems.append("No legal issues supplied")
    has_text = any(text.strip() for text in request.document_texts.values())
    if not request.documents and not request.case_summary.strip() and not has_text:
        problems.append("No case documents or case summary supplied")
    return problems


def build_store(request: PipelineInput) -> ContextStore:
    return ContextStore(
        case_summary=request.case_summary,
        parties=request.parties,
        case_metadata=request.case_metadata,
        brief_type=request.brief_type,
        legal_issues=request.legal_issues,
        documents=request.documents,
        information_gaps=request.information_gaps,
    )


async def run_brief_pipeline(
    request: PipelineInput,
    gateway: GatewayClient,
    citations: CitationsClient,
    documents: Optional[DocumentStore] = None,
    session: Optional[LawSearchSession] = None,
    settings: Optional[Settings] = None,
    callbacks: Optional[PipelineCallbacks] = None,
    cancel: Optional[asyncio.Event] = None,
) -> PipelineResult:
    """
    Generate a brief.

    Args:
        request: Case-intake seed
        gateway: Reasoning / JSON / review backend
        citations: Citation-capable backend for drafting
        documents: Full-text source; defaults to request.document_texts
        session: Law search session (connected here if needed, always closed)
        settings: Limits and prompt configuration
        callbacks: Event / persistence callbacks
        cancel: Event that aborts the run

    Raises:
        SetupError: Nothing to work from
    """
    settings = settings or get_settings()
    documents = documents or InMemoryDocumentStore(request.document_texts)
    emitter = ProgressEmitter(callbacks)
    store = build_store(request)
    result = PipelineResult(store=store)
    resolver = LawMentionResolver(store, session, on_updated=emitter.authorities_updated, cancel=cancel)

    try:
        # ── Case analysis ──
        await emitter.stage_started(PipelineStage.CASE_ANALYSIS, "Checking case material")
        problems = check_source_material(request)
        if problems:
            await emitter.emit(ProgressEventKind.ERROR, PipelineStage.CASE_ANALYSIS, "; ".join(problems), problems=problems)
            raise SetupError("Cannot generate a brief", problems)
        await emitter.stage_completed(
            PipelineStage.CASE_ANALYSIS,
            f"{len(store.legal_issues)} issues, {len(store.documents)} documents",
            issues=len(store.legal_issues),
            documents=len(store.documents),
        )

        if session is not None and not session.connected:
            await session.connect()

        # ── Legal research ──
        raise_if_cancelled(cancel)
        await emitter.stage_started(PipelineStage.LEGAL_RESEARCH, "Fetching authorities")
        research = await run_legal_research(
            session,
            store.legal_issues,
            request.user_law_refs,
            request.search_queries,
            search_limit=settings.search_default_limit,
            cancel=cancel,
        )
        added = store.add_found_laws(research.laws)
        for law in added:
            await emitter.emit(
                ProgressEventKind.AUTHORITY_FOUND, PipelineStage.LEGAL_RESEARCH, law.label,
                law_id=law.id, source=law.source.value,
            )
        if added:
            await emitter.authorities_updated(store.found_laws)
        await emitter.stage_completed(
            PipelineStage.LEGAL_RESEARCH,
            f"{len(store.found_laws)} authorities",
            authorities=len(store.found_laws),
            unresolved=research.unresolved,
            searches=research.searches,
        )

        # ── Strategy ──
        raise_if_cancelled(cancel)
        await emitter.stage_started(PipelineStage.STRATEGY, "Reasoning about the argument")
        before = {law.id for law in store.found_laws}
        loop_result, _ = await run_reasoning(gateway, store, session, documents, settings, cancel=cancel)
        result.reasoning_rounds = loop_result.rounds
        result.reasoning_termination = loop_result.termination
        result.usage.add(loop_result.usage.input_tokens, loop_result.usage.output_tokens)
        if loop_result.termination == TerminationReason.CANCELLED:
            raise PipelineCancelled("Run cancelled during reasoning")

        supplemented = [law for law in store.found_laws if law.id not in before]
        for law in supplemented:
            await emitter.emit(
                ProgressEventKind.AUTHORITY_FOUND, PipelineStage.STRATEGY, law.label,
                law_id=law.id, source=LawSource.SUPPLEMENTED.value,
            )
        if supplemented:
            await emitter.authorities_updated(store.found_laws)

        outcome = await run_structured_output(gateway, store, settings, result.usage, cancel=cancel)
        if not outcome.validation.valid:
            await emitter.emit(
                ProgressEventKind.VALIDATION_FAILED, PipelineStage.STRATEGY,
                f"{len(outcome.validation.errors)} structural problems in the plan",
                errors=outcome.validation.errors,
                enriched=outcome.enriched,
                fallback=outcome.fallback,
            )
        store.set_strategy_output(outcome.output.claims, outcome.output.sections)
        await emitter.stage_completed(
            PipelineStage.STRATEGY,
            f"{len(store.sections)} sections planned",
            rounds=loop_result.rounds,
            termination=loop_result.termination.value,
            attempts=outcome.attempts,
            **summarize_plan(outcome.output),
        )

        # ── Drafting ──
        await emitter.stage_started(PipelineStage.DRAFTING, f"Drafting {len(store.sections)} sections")
        for index, section in enumerate(store.sections):
            raise_if_cancelled(cancel)
            try:
                draft, grounded = await write_section(citations, store, index, documents, settings, cancel=cancel)
            except PipelineCancelled:
                raise
            except Exception as e:
                logger.error(f"Drafting section {section.id} failed: {type(e).__name__}: {e}")
                result.failed_sections.append(section.id)
                await emitter.emit(
                    ProgressEventKind.ERROR, PipelineStage.DRAFTING,
                    f"Section {section.heading} failed", section_id=section.id, error=str(e),
                )
                continue

            result.usage.add(grounded.input_tokens, grounded.output_tokens)
            store.add_draft_section(draft)
            await emitter.section_added(draft)
            await emitter.emit(
                ProgressEventKind.SECTION_WRITTEN, PipelineStage.DRAFTING, section.heading,
                section_id=section.id,
                paragraph_id=draft.paragraph_id,
                index=index,
                total=len(store.sections),
                citations=len(draft.citations),
            )
            resolver.schedule(draft)

        resolved = await resolver.drain()
        await emitter.stage_completed(
            PipelineStage.DRAFTING,
            f"{len(store.draft_sections)} of {len(store.sections)} sections drafted",
            drafted=len(store.draft_sections),
            failed_sections=result.failed_sections,
            resolved_authorities=[law.id for law in resolved],
        )

        # ── Review ──
        raise_if_cancelled(cancel)
        await emitter.stage_started(PipelineStage.REVIEW, "Reviewing the draft")
        result.review = await run_review(gateway, store, settings, result.usage, cancel=cancel)
        await emitter.stage_completed(
            PipelineStage.REVIEW,
            "passed" if result.review.passed else "not passed",
            passed=result.review.passed,
            issues=len(result.review.issues),
            precheck=len(result.review.structural_issues_from_precheck),
        )

        await emitter.emit(
            ProgressEventKind.DONE,
            message=f"Brief drafted: {len(store.draft_sections)} sections",
            sections=len(store.draft_sections),
            failed_sections=result.failed_sections,
            authorities=len(store.found_laws),
            passed=result.review.passed,
            usage=result.usage.to_dict(),
        )
        return result

    except PipelineCancelled:
        logger.info(f"Run cancelled with {len(store.draft_sections)} sections drafted")
        result.cancelled = True
        await emitter.emit(
            ProgressEventKind.ERROR,
            message="Run cancelled",
            cancelled=True,
            sections=len(store.draft_sections),
            failed_sections=result.failed_sections,
            usage=result.usage.to_dict(),
        )
        return result

    except BackendError as e:
        logger.error(f"Run aborted by backend error: {e}")
        await emitter.emit(ProgressEventKind.ERROR, message=str(e), status_code=e.status_code)
        raise

    finally:
        # Background lookups must not outlive the search session
        await resolver.cancel_all()
        if session is not None:
            await session.close()


def create_search_session(settings: Settings, gateway: GatewayClient) -> Optional[LawSearchSession]:
    """Search session for one run, or None when no search service is configured"""
    if not settings.law_search_base_url:
        logger.warning("LAW_SEARCH_BASE_URL not set, running without authority search")
        return None
    embedder = gateway.embed if settings.embedding_model else None
    return LawSearchSession.from_settings(settings, embedder=embedder)
