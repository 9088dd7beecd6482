"""
Strategy Validation & Enrichment
================================

Structural checks on the strategy output (claims + sections) and the
programmatic enrichment applied when the model cannot produce a clean plan.

Claims are kept in a flat dict keyed by ID; the responds-to graph is walked
by ID lookup and its acyclicity is checked explicitly.

Checks (errors unless noted):
- Section IDs unique
- Non-intro/conclusion sections list at least one claim
- Every legal issue is covered by some section
- assigned_section resolves; every `ours` claim is assigned
- Section claim IDs resolve
- rebuttal/supporting claims carry a resolving responds_to; primary claims don't
- responds_to edges contain no cycle
- dispute_id resolves to a legal issue
- Argumentation legal_basis is listed in the section's relevant_law_ids
- Authority IDs resolve to known authorities (when the known set is given)
- Opponent primary/rebuttal claims without a response (warning only)
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .schemas import (
    Claim,
    ClaimType,
    LegalIssue,
    PreCheckIssue,
    PreCheckSeverity,
    PreCheckType,
    Side,
    StrategyOutput,
    StrategySection,
)

logger = logging.getLogger(__name__)

# Section headings that may legitimately carry no claims
FRAME_SECTION_KEYWORDS = ("前言", "結論", "introduction", "conclusion", "preamble")


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def is_frame_section(section: StrategySection) -> bool:
    heading = f"{section.section} {section.subsection or ''}".lower()
    return any(keyword in heading for keyword in FRAME_SECTION_KEYWORDS)


def find_responds_to_cycles(claims: Dict[str, Claim]) -> List[List[str]]:
    """
    Cycles in the responds-to graph, each as the list of claim IDs on it.

    Every claim has at most one parent, so following parents from any claim
    either ends at a root or revisits a claim of the current walk.
    """
    cycles: List[List[str]] = []
    finished: Set[str] = set()

    for start in claims:
        if start in finished:
            continue
        path: List[str] = []
        on_path: Dict[str, int] = {}
        current: Optional[str] = start
        while current is not None and current in claims and current not in finished:
            if current in on_path:
                cycles.append(path[on_path[current]:])
                break
            on_path[current] = len(path)
            path.append(current)
            current = claims[current].responds_to
        finished.update(path)

    return cycles


def validate_strategy_output(
    output: StrategyOutput,
    issues: Iterable[LegalIssue],
    known_law_ids: Optional[Iterable[str]] = None,
) -> ValidationResult:
    result = ValidationResult()
    issue_ids = {issue.id for issue in issues}
    known_laws = set(known_law_ids) if known_law_ids is not None else None
    claims: Dict[str, Claim] = {}
    for claim in output.claims:
        if claim.id in claims:
            result.errors.append(f"Duplicate claim id: {claim.id}")
        claims[claim.id] = claim

    section_ids: Set[str] = set()
    for section in output.sections:
        if section.id in section_ids:
            result.errors.append(f"Duplicate section id: {section.id}")
        section_ids.add(section.id)

    for section in output.sections:
        if not section.claims and not is_frame_section(section):
            result.errors.append(f"Section {section.id} ({section.heading}) lists no claims")
        for claim_id in section.claims:
            if claim_id not in claims:
                result.errors.append(f"Section {section.id} lists unknown claim {claim_id}")
        if section.dispute_id and section.dispute_id not in issue_ids:
            result.errors.append(f"Section {section.id} references unknown issue {section.dispute_id}")
        missing_basis = [i for i in section.argumentation.legal_basis if i not in section.relevant_law_ids]
        if missing_basis:
            result.errors.append(
                f"Section {section.id} legal_basis not in relevant_law_ids: {', '.join(missing_basis)}"
            )
        if known_laws is not None:
            referenced = dict.fromkeys(section.relevant_law_ids + section.argumentation.legal_basis)
            unknown_laws = [law_id for law_id in referenced if law_id not in known_laws]
            if unknown_laws:
                result.errors.append(
                    f"Section {section.id} references unknown authorities: {', '.join(unknown_laws)}"
                )

    covered = {s.dispute_id for s in output.sections if s.dispute_id}
    for issue_id in sorted(issue_ids - covered):
        result.errors.append(f"Issue {issue_id} is not covered by any section")

    for claim in claims.values():
        if claim.assigned_section and claim.assigned_section not in section_ids:
            result.errors.append(f"Claim {claim.id} assigned to unknown section {claim.assigned_section}")
        if claim.side == Side.OURS and not claim.assigned_section:
            result.errors.append(f"Our claim {claim.id} is not assigned to a section")
        if claim.dispute_id and claim.dispute_id not in issue_ids:
            result.errors.append(f"Claim {claim.id} references unknown issue {claim.dispute_id}")

        if claim.claim_type == ClaimType.PRIMARY:
            if claim.responds_to:
                result.errors.append(f"Primary claim {claim.id} must not respond to {claim.responds_to}")
        elif not claim.responds_to:
            result.errors.append(f"{claim.claim_type.value} claim {claim.id} has no responds_to")
        elif claim.responds_to not in claims:
            result.errors.append(f"Claim {claim.id} responds to unknown claim {claim.responds_to}")

    for cycle in find_responds_to_cycles(claims):
        result.errors.append(f"responds_to cycle: {' -> '.join(cycle + cycle[:1])}")

    answered = {c.responds_to for c in claims.values() if c.side == Side.OURS and c.responds_to}
    for claim in claims.values():
        if (
            claim.side == Side.THEIRS
            and claim.claim_type in (ClaimType.PRIMARY, ClaimType.REBUTTAL)
            and claim.id not in answered
        ):
            result.warnings.append(f"Opponent claim {claim.id} has no response from our side")

    return result


# =============================================================================
# Enrichment
# =============================================================================

def _majority(values: Iterable[Optional[str]]) -> Optional[str]:
    counts = Counter(v for v in values if v)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def enrich_strategy_output(
    output: StrategyOutput,
    issues: List[LegalIssue],
    known_law_ids: Optional[Iterable[str]] = None,
) -> StrategyOutput:
    """
    Best-effort repair of a strategy that failed validation.

    Guarantees afterwards: section IDs unique, section claim lists resolve,
    legal_basis within relevant_law_ids, authority IDs within known_law_ids
    (when given), and the claim-graph invariants
    (primary has no parent, rebuttal/supporting have a resolving parent, ours
    claims assigned to an existing section, no responds-to cycles).
    """
    issue_ids = {issue.id for issue in issues}
    known_laws = set(known_law_ids) if known_law_ids is not None else None
    claims: Dict[str, Claim] = {}
    for claim in output.claims:
        claims.setdefault(claim.id, claim)

    # Unique section IDs
    seen_sections: Set[str] = set()
    for section in output.sections:
        base, n = section.id, 2
        while section.id in seen_sections:
            section.id = f"{base}_{n}"
            n += 1
        seen_sections.add(section.id)

    sections = output.sections
    if not sections and claims:
        sections.append(StrategySection(id="sec_main", section="Argument"))
    by_id = {s.id: s for s in sections}

    # Dangling references
    for section in sections:
        section.claims = list(dict.fromkeys(c for c in section.claims if c in claims))
        section.relevant_law_ids = list(dict.fromkeys(section.relevant_law_ids + section.argumentation.legal_basis))
        if known_laws is not None:
            dropped = [law_id for law_id in section.relevant_law_ids if law_id not in known_laws]
            if dropped:
                logger.info(f"Section {section.id}: dropping unknown authorities {dropped}")
                section.relevant_law_ids = [i for i in section.relevant_law_ids if i in known_laws]
                section.argumentation.legal_basis = [i for i in section.argumentation.legal_basis if i in known_laws]
        if section.dispute_id and section.dispute_id not in issue_ids:
            section.dispute_id = None
    for claim in claims.values():
        if claim.dispute_id and claim.dispute_id not in issue_ids:
            claim.dispute_id = None
        if claim.assigned_section and claim.assigned_section not in by_id:
            claim.assigned_section = None

    # Section listing a claim wins over nothing
    for section in sections:
        for claim_id in section.claims:
            if not claims[claim_id].assigned_section:
                claims[claim_id].assigned_section = section.id

    # Backfill section issue from its claims, then claim issue from its section
    for section in sections:
        if not section.dispute_id:
            members = [c for c in claims.values() if c.assigned_section == section.id or c.id in section.claims]
            section.dispute_id = _majority(c.dispute_id for c in members)
    for claim in claims.values():
        if not claim.dispute_id and claim.assigned_section:
            claim.dispute_id = by_id[claim.assigned_section].dispute_id

    # Every ours claim gets a section: same issue first, else the first argument section
    fallback = next((s for s in sections if not is_frame_section(s)), sections[0] if sections else None)
    for claim in claims.values():
        if claim.side != Side.OURS or claim.assigned_section:
            continue
        target = next((s for s in sections if claim.dispute_id and s.dispute_id == claim.dispute_id), fallback)
        if target is not None:
            claim.assigned_section = target.id
            if claim.id not in target.claims:
                target.claims.append(claim.id)

    _repair_claim_graph(claims)

    output.claims = list(claims.values())
    output.sections = sections
    return output


def _repair_claim_graph(claims: Dict[str, Claim]) -> None:
    # Unresolvable parents are dropped
    for claim in claims.values():
        if claim.responds_to and (claim.responds_to not in claims or claim.responds_to == claim.id):
            claim.responds_to = None

    # Break cycles at the claim closing each one
    for cycle in find_responds_to_cycles(claims):
        claims[cycle[-1]].responds_to = None

    # Parent-less rebuttal/supporting claims look for one, primary claims lose theirs
    unanswered = [
        c for c in claims.values()
        if c.side == Side.THEIRS and c.claim_type in (ClaimType.PRIMARY, ClaimType.REBUTTAL)
    ]
    for claim in claims.values():
        if claim.claim_type == ClaimType.PRIMARY:
            if claim.responds_to:
                parent = claims[claim.responds_to]
                claim.claim_type = ClaimType.REBUTTAL if parent.side != claim.side else ClaimType.SUPPORTING
            continue
        if claim.responds_to:
            continue

        parent = None
        if claim.claim_type == ClaimType.REBUTTAL:
            parent = next(
                (c for c in unanswered if c.side != claim.side and c.dispute_id == claim.dispute_id and c.id != claim.id),
                None,
            )
        else:
            parent = next(
                (
                    c for c in claims.values()
                    if c.side == claim.side
                    and c.claim_type == ClaimType.PRIMARY
                    and c.id != claim.id
                    and c.assigned_section == claim.assigned_section
                ),
                None,
            )
        if parent is not None and not _reaches(claims, parent.id, claim.id):
            claim.responds_to = parent.id
        else:
            claim.claim_type = ClaimType.PRIMARY


def _reaches(claims: Dict[str, Claim], start: str, target: str) -> bool:
    """True if following responds_to from `start` reaches `target`"""
    seen: Set[str] = set()
    current: Optional[str] = start
    while current and current in claims and current not in seen:
        if current == target:
            return True
        seen.add(current)
        current = claims[current].responds_to
    return False


# =============================================================================
# Structural pre-check (review stage)
# =============================================================================

def structural_pre_check(
    claims: List[Claim],
    sections: List[StrategySection],
    issues: List[LegalIssue],
) -> List[PreCheckIssue]:
    """Deterministic coverage checks run before the LLM review"""
    problems: List[PreCheckIssue] = []
    section_ids = {s.id for s in sections}

    for claim in claims:
        if claim.side == Side.OURS and (not claim.assigned_section or claim.assigned_section not in section_ids):
            problems.append(PreCheckIssue(
                severity=PreCheckSeverity.CRITICAL,
                type=PreCheckType.UNASSIGNED_CLAIM,
                description=f"Our claim {claim.id} is not assigned to any section: {claim.statement[:60]}",
            ))

    answered = {c.responds_to for c in claims if c.side == Side.OURS and c.responds_to}
    for claim in claims:
        if (
            claim.side == Side.THEIRS
            and claim.claim_type in (ClaimType.PRIMARY, ClaimType.REBUTTAL)
            and claim.id not in answered
        ):
            problems.append(PreCheckIssue(
                severity=PreCheckSeverity.WARNING,
                type=PreCheckType.UNCOVERED_OPPONENT_CLAIM,
                description=f"Opponent claim {claim.id} is not rebutted: {claim.statement[:60]}",
            ))

    covered = {s.dispute_id for s in sections if s.dispute_id}
    for issue in issues:
        if issue.id not in covered:
            problems.append(PreCheckIssue(
                severity=PreCheckSeverity.CRITICAL,
                type=PreCheckType.UNCOVERED_DISPUTE,
                description=f"Issue {issue.id} ({issue.title}) has no section",
            ))

    return problems
