"""
Quality Review
==============

Reads the whole Context Store after drafting:

1. Structural pre-check (deterministic): unassigned claims, unrebutted
   opponent claims, issues without a section
2. LLM review of the full draft returning {"passed": bool, "issues": [...]}

If the LLM review fails or returns nothing usable, the verdict falls back to
the pre-check alone.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .config import Settings
from .context_store import ContextStore
from .errors import MalformedOutputError
from .llm.gateway import GatewayClient, UsageTotals
from .schemas import PreCheckIssue, PreCheckSeverity, ReviewIssue, ReviewResult
from .structured_output import extract_json_object, safe_log_content
from .validation import structural_pre_check

logger = logging.getLogger(__name__)


REVIEW_SYSTEM_PROMPT = """You are a senior litigator reviewing a draft {brief_type} before filing.

Check:
- Every legal issue is argued with authority and evidence
- Every opponent argument is answered
- Citations support the sentences they are attached to
- Sections do not contradict each other and follow a logical order
- Register, terminology and formatting are appropriate for the court

Return ONLY a JSON object:
{{"passed": true|false,
  "issues": [{{"paragraph_id": "id or null", "severity": "critical|warning",
              "type": "short category", "description": "...", "suggestion": "..."}}]}}
Set "passed" to false when any critical issue exists. Write in {language}."""


def build_review_input(store: ContextStore, precheck: List[PreCheckIssue]) -> str:
    drafts = "\n\n---\n\n".join(
        f"[paragraph_id: {d.paragraph_id}] {d.section}{' > ' + d.subsection if d.subsection else ''}\n\n{d.content}"
        for d in store.draft_sections
    )
    issues = "\n".join(
        f"[{i.id}] {i.title}\n  Our position: {i.our_position}\n  Their position: {i.their_position}"
        for i in store.legal_issues
    )
    parts = [
        f"Brief type: {store.brief_type}",
        f"Legal issues:\n{issues}",
        f"Claims: {len(store.claims)} ({len(store.get_unrebutted())} opponent claims unrebutted)",
        f"Draft:\n{drafts}",
    ]
    if precheck:
        parts.append("Structural pre-check findings:\n" + "\n".join(
            f"- [{p.severity.value}] {p.description}" for p in precheck
        ))
    return "\n\n".join(parts)


def _verdict(precheck: List[PreCheckIssue], issues: List[ReviewIssue], llm_passed: bool = True) -> bool:
    if any(p.severity == PreCheckSeverity.CRITICAL for p in precheck):
        return False
    if any(i.severity == "critical" for i in issues):
        return False
    return llm_passed


def parse_review_issues(data: Dict[str, Any]) -> List[ReviewIssue]:
    issues: List[ReviewIssue] = []
    for item in data.get("issues") or []:
        try:
            issues.append(ReviewIssue.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Skipping invalid review issue: {e.error_count()} errors")
    return issues


async def run_review(
    gateway: GatewayClient,
    store: ContextStore,
    settings: Settings,
    usage: Optional[UsageTotals] = None,
    cancel: Optional[asyncio.Event] = None,
) -> ReviewResult:
    precheck = structural_pre_check(store.claims, store.sections, store.legal_issues)
    logger.info(f"Structural pre-check: {len(precheck)} findings")

    if not store.draft_sections:
        logger.warning("No drafted sections, review uses the pre-check only")
        return ReviewResult(passed=False, structural_issues_from_precheck=precheck)

    messages = [
        {
            "role": "system",
            "content": REVIEW_SYSTEM_PROMPT.format(brief_type=store.brief_type, language=settings.brief_language),
        },
        {"role": "user", "content": build_review_input(store, precheck)},
    ]
    result = await gateway.call(
        messages,
        response_format={"type": "json_object"},
        max_tokens=settings.review_max_tokens,
        model=settings.writer_model,
        cancel=cancel,
    )
    if usage is not None:
        usage.add(result.input_tokens, result.output_tokens)

    if not result.success:
        logger.error(f"Review call failed, falling back to pre-check verdict: {result.error}")
        return ReviewResult(passed=_verdict(precheck, []), structural_issues_from_precheck=precheck)

    try:
        data = extract_json_object(result.content, truncated=result.truncated)
    except MalformedOutputError as e:
        logger.error(f"Review output unusable ({e}): {safe_log_content(result.content)}")
        return ReviewResult(passed=_verdict(precheck, []), structural_issues_from_precheck=precheck)

    issues = parse_review_issues(data)
    passed = _verdict(precheck, issues, bool(data.get("passed", True)))
    logger.info(f"Review: passed={passed}, {len(issues)} issues")
    return ReviewResult(passed=passed, structural_issues_from_precheck=precheck, issues=issues)


def format_review(review: ReviewResult) -> str:
    """Markdown rendering for chat or logs"""
    lines = ["## Quality review: " + ("passed" if review.passed else "not passed"), ""]
    for severity, title in (("critical", "Critical issues"), ("warning", "Suggested improvements")):
        found = [i for i in review.issues if i.severity == severity]
        if not found:
            continue
        lines.append(f"### {title} ({len(found)})")
        for issue in found:
            lines.append(f"- **[{issue.type}]** {issue.description}")
            if issue.suggestion:
                lines.append(f"  Suggestion: {issue.suggestion}")
        lines.append("")
    if review.structural_issues_from_precheck:
        lines.append(f"### Structural checks ({len(review.structural_issues_from_precheck)})")
        for p in review.structural_issues_from_precheck:
            lines.append(f"- [{p.severity.value}] {p.description}")
        lines.append("")
    if not review.issues and not review.structural_issues_from_precheck:
        lines.append("No issues found.")
    return "\n".join(lines).rstrip() + "\n"
