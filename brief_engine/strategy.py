"""
Strategy Stage
==============

Two phases:

1. Reasoning - a bounded tool loop (search_law / read_file /
   finalize_strategy) that explores the case and supplements authorities.
2. Structured output - a clean JSON call producing claims + sections, run
   through the repair loop:
   parse (one stricter retry on parse failure) -> validate ->
   one retry with the enumerated violations -> keep the better output ->
   programmatic enrichment if still invalid.

If no parseable plan comes back at all, a skeleton plan is derived from the
legal issues so drafting can still run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from .agent import LoopLimits, ReasoningBackend, TerminationReason, ToolLoopResult, ToolName, run_tool_loop
from .config import Settings
from .context_store import ContextStore
from .documents import DocumentStore
from .errors import MalformedOutputError
from .law_refs import truncate_law_content
from .llm.gateway import GatewayClient, UsageTotals
from .retrieval import LawSearchSession
from .schemas import Claim, ClaimType, LegalIssue, Side, StrategyOutput, StrategySection
from .structured_output import extract_json_object, safe_log_content
from .tools import ReasoningState, build_reasoning_registry
from .validation import ValidationResult, enrich_strategy_output, validate_strategy_output

logger = logging.getLogger(__name__)


REASONING_SYSTEM_PROMPT = """You are a senior litigator planning a {brief_type} brief.

Work through every legal issue:
- Identify the elements each side must prove and which facts support them
- Anticipate the opponent's arguments and how we answer them
- Use search_law to find authorities that are missing (at most {max_searches} searches)
- Use read_file when a document summary is not enough

When the analysis is complete, call finalize_strategy once with a reasoning
summary. Searched authorities are kept automatically; list in supplemented_law_ids
only further authority IDs the brief should rely on.
Write in {language}."""


STRATEGY_JSON_PROMPT = """Turn the analysis into a brief plan. Return ONLY a JSON object:

{{
  "claims": [
    {{"id": "c1", "side": "ours|theirs", "claim_type": "primary|rebuttal|supporting",
      "statement": "...", "assigned_section": "sec_1", "dispute_id": "issue id",
      "responds_to": "claim id or null"}}
  ],
  "sections": [
    {{"id": "sec_1", "section": "heading", "subsection": "optional sub-heading",
      "dispute_id": "issue id", "claims": ["c1"],
      "argumentation": {{"legal_basis": ["law id"], "fact_application": "...", "conclusion": "..."}},
      "relevant_file_ids": ["file id"], "relevant_law_ids": ["law id"],
      "facts_to_use": ["..."], "legal_reasoning": "..."}}
  ]
}}

Rules:
- Every issue must be covered by at least one section (dispute_id)
- Every "ours" claim has an assigned_section; every section except introduction/conclusion lists claims
- rebuttal/supporting claims set responds_to; primary claims leave it null
- Each opponent primary/rebuttal claim should be answered by one of our claims
- legal_basis IDs must also appear in relevant_law_ids; use only the authority IDs listed above
Write statements in {language}."""


STRATEGY_JSON_RETRY = (
    'Your previous reply was not a valid JSON object. Reply with ONLY the JSON object '
    'with keys "claims" and "sections". No prose, no markdown.'
)


@dataclass
class StrategyOutcome:
    """Result of the structured-output phase"""
    output: StrategyOutput
    validation: ValidationResult = field(default_factory=ValidationResult)
    attempts: int = 0
    enriched: bool = False
    fallback: bool = False


# =============================================================================
# Prompt context
# =============================================================================

def format_case_context(store: ContextStore, max_law_content: int = 600) -> str:
    parts: List[str] = []
    meta = store.case_metadata
    if meta.case_number or meta.court:
        parts.append(f"Case: {meta.case_number} {meta.court} ({meta.case_type}), client role: {meta.client_role}")
    if store.parties:
        parts.append("Parties: " + "; ".join(f"{role}: {name}" for role, name in store.parties.items()))
    if store.case_summary:
        parts.append(f"Summary:\n{store.case_summary}")
    if meta.case_instructions:
        parts.append(f"Instructions from counsel:\n{meta.case_instructions}")

    issue_lines = []
    for issue in store.legal_issues:
        issue_lines.append(
            f"[{issue.id}] {issue.title}\n"
            f"  Our position: {issue.our_position}\n"
            f"  Their position: {issue.their_position}\n"
            f"  Evidence: {', '.join(issue.key_evidence) or '-'}\n"
            f"  Mentioned laws: {', '.join(issue.mentioned_laws) or '-'}"
        )
        for fact in issue.facts:
            issue_lines.append(f"  - fact {fact.id}: {fact.description}")
    parts.append("Legal issues:\n" + "\n".join(issue_lines))

    if store.documents:
        parts.append("Case documents:\n" + "\n".join(
            f"[{d.id}] {d.filename}: {d.summary or '(no summary)'}" for d in store.documents
        ))

    if store.found_laws:
        parts.append("Authorities:\n" + "\n".join(
            f"[{law.id}] {law.label} ({law.source.value})\n{truncate_law_content(law.content, max_law_content)}"
            for law in store.found_laws
        ))

    if store.information_gaps:
        parts.append("Information gaps:\n" + "\n".join(f"- {gap.description}" for gap in store.information_gaps))

    return "\n\n".join(parts)


# =============================================================================
# Phase 1: reasoning
# =============================================================================

async def run_reasoning(
    backend: ReasoningBackend,
    store: ContextStore,
    session: Optional[LawSearchSession],
    documents: DocumentStore,
    settings: Settings,
    cancel: Optional[asyncio.Event] = None,
    on_text=None,
) -> Tuple[ToolLoopResult, ReasoningState]:
    state = ReasoningState()
    registry = build_reasoning_registry(
        store,
        session,
        documents,
        state,
        max_searches=settings.reasoning_max_searches,
        default_limit=settings.search_default_limit,
        max_law_content=settings.max_law_content_length,
        max_file_content=settings.max_file_content_length,
        cancel=cancel,
    )
    system_prompt = REASONING_SYSTEM_PROMPT.format(
        brief_type=store.brief_type,
        max_searches=settings.reasoning_max_searches,
        language=settings.brief_language,
    )
    limits = LoopLimits(
        max_rounds=settings.reasoning_max_rounds,
        timeout=settings.reasoning_timeout,
        soft_timeout=settings.reasoning_soft_timeout,
        max_tokens=settings.reasoning_max_tokens,
    )
    result = await run_tool_loop(
        backend,
        system_prompt,
        [{"role": "user", "content": format_case_context(store, settings.max_law_content_length)}],
        registry,
        terminal_tool=ToolName.FINALIZE_STRATEGY,
        limits=limits,
        cancel=cancel,
        on_text=on_text,
    )

    if not state.finalized and result.termination != TerminationReason.CANCELLED:
        # Forced or tool-free ending: keep whatever the model wrote as the summary
        summary = result.final_text.strip() or "Reasoning ended without an explicit summary."
        state.summary = summary
        store.set_reasoning(summary, state.supplemented_law_ids)
    return result, state


# =============================================================================
# Phase 2: structured output
# =============================================================================

def parse_strategy_payload(data: Dict[str, Any]) -> StrategyOutput:
    """Build a StrategyOutput, skipping individual items pydantic rejects"""
    if not isinstance(data.get("claims"), list) or not isinstance(data.get("sections"), list):
        raise MalformedOutputError("JSON must contain 'claims' and 'sections' arrays")

    claims: List[Claim] = []
    for item in data["claims"]:
        try:
            claims.append(Claim.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping invalid claim: {e.error_count()} errors")
    sections: List[StrategySection] = []
    for item in data["sections"]:
        try:
            sections.append(StrategySection.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping invalid section: {e.error_count()} errors")

    return StrategyOutput(claims=claims, sections=sections)


def skeleton_strategy(issues: List[LegalIssue]) -> StrategyOutput:
    """One section per issue: our position rebutting theirs"""
    claims: List[Claim] = []
    sections: List[StrategySection] = []
    for n, issue in enumerate(issues, 1):
        section_id = f"sec_{n}"
        section_claims: List[str] = []
        theirs_id = None
        if issue.their_position:
            theirs_id = f"c{n}_theirs"
            claims.append(Claim(
                id=theirs_id,
                side=Side.THEIRS,
                statement=issue.their_position,
                assigned_section=section_id,
                dispute_id=issue.id,
            ))
            section_claims.append(theirs_id)
        ours_id = f"c{n}_ours"
        claims.append(Claim(
            id=ours_id,
            side=Side.OURS,
            claim_type=ClaimType.REBUTTAL if theirs_id else ClaimType.PRIMARY,
            statement=issue.our_position or issue.title,
            assigned_section=section_id,
            dispute_id=issue.id,
            responds_to=theirs_id,
        ))
        section_claims.append(ours_id)
        sections.append(StrategySection(
            id=section_id,
            section=issue.title,
            dispute_id=issue.id,
            claims=section_claims,
            relevant_file_ids=list(issue.key_evidence),
        ))
    return StrategyOutput(claims=claims, sections=sections)


def _violation_message(validation: ValidationResult) -> str:
    lines = "\n".join(f"{n}. {error}" for n, error in enumerate(validation.errors, 1))
    return (
        f"The plan has {len(validation.errors)} structural problems:\n{lines}\n\n"
        "Fix every problem and reply with the complete corrected JSON object only."
    )


async def _generate_plan(
    gateway: GatewayClient,
    messages: List[Dict[str, Any]],
    settings: Settings,
    usage: UsageTotals,
    cancel: Optional[asyncio.Event],
) -> Tuple[Optional[StrategyOutput], str]:
    result = await gateway.call(
        messages,
        response_format={"type": "json_object"},
        max_tokens=settings.json_output_max_tokens,
        model=settings.writer_model,
        cancel=cancel,
    )
    usage.add(result.input_tokens, result.output_tokens)
    if not result.success:
        logger.error(f"Strategy JSON call failed: {result.error}")
        return None, ""

    logger.debug(f"Strategy JSON response: {safe_log_content(result.content)}")
    try:
        data = extract_json_object(result.content, truncated=result.truncated)
        return parse_strategy_payload(data), result.content
    except MalformedOutputError as e:
        logger.warning(f"Strategy JSON unusable ({type(e).__name__}): {e}")
        return None, result.content


async def run_structured_output(
    gateway: GatewayClient,
    store: ContextStore,
    settings: Settings,
    usage: UsageTotals,
    cancel: Optional[asyncio.Event] = None,
) -> StrategyOutcome:
    context = format_case_context(store, settings.max_law_content_length)
    if store.reasoning_summary:
        context += f"\n\nStrategy analysis:\n{store.reasoning_summary}"
    base: List[Dict[str, Any]] = [
        {"role": "system", "content": STRATEGY_JSON_PROMPT.format(language=settings.brief_language)},
        {"role": "user", "content": context},
    ]

    known_law_ids = {law.id for law in store.found_laws}
    outcome = StrategyOutcome(output=StrategyOutput(claims=[], sections=[]))
    first, raw = await _generate_plan(gateway, base, settings, usage, cancel)
    outcome.attempts = 1

    if first is None:
        retry = base + [
            {"role": "assistant", "content": raw or "(empty)"},
            {"role": "user", "content": STRATEGY_JSON_RETRY},
        ]
        first, raw = await _generate_plan(gateway, retry, settings, usage, cancel)
        outcome.attempts = 2

    if first is None:
        logger.error("Strategy JSON failed twice, deriving a skeleton plan from the issues")
        outcome.output = skeleton_strategy(store.legal_issues)
        outcome.validation = validate_strategy_output(outcome.output, store.legal_issues, known_law_ids)
        outcome.fallback = True
        return outcome

    chosen = first
    validation = validate_strategy_output(first, store.legal_issues, known_law_ids)
    if not validation.valid:
        logger.warning(f"Strategy validation failed with {len(validation.errors)} errors, retrying once")
        retry = base + [
            {"role": "assistant", "content": raw},
            {"role": "user", "content": _violation_message(validation)},
        ]
        second, _ = await _generate_plan(gateway, retry, settings, usage, cancel)
        outcome.attempts += 1
        if second is not None:
            second_validation = validate_strategy_output(second, store.legal_issues, known_law_ids)
            if len(second_validation.errors) <= len(validation.errors):
                chosen, validation = second, second_validation

    outcome.validation = validation
    if not validation.valid:
        chosen = enrich_strategy_output(chosen, store.legal_issues, known_law_ids)
        outcome.enriched = True
        remaining = validate_strategy_output(chosen, store.legal_issues, known_law_ids)
        logger.info(f"Enrichment left {len(remaining.errors)} of {len(validation.errors)} errors")

    outcome.output = chosen
    return outcome


def summarize_plan(output: StrategyOutput) -> Dict[str, Any]:
    """Counts for progress events"""
    return {
        "claims": len(output.claims),
        "ours": sum(1 for c in output.claims if c.side == Side.OURS),
        "theirs": sum(1 for c in output.claims if c.side == Side.THEIRS),
        "sections": len(output.sections),
        "section_ids": [s.id for s in output.sections],
        "dispute_ids": sorted({s.dispute_id for s in output.sections if s.dispute_id}),
    }
