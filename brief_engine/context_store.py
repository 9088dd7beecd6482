"""
Context Store
=============

The single mutable object threaded through one pipeline run.

Holds typed slices (case seed data, legal issues, authorities, claims,
sections, drafted sections) and answers the narrow queries each stage needs.
Claims live in a flat arena keyed by ID; graph relations are resolved by ID
lookup only.

Not designed for concurrent writers: concurrent sub-tasks hand their fully
resolved results to a single write call.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .schemas import (
    CaseDocument,
    CaseMetadata,
    Claim,
    ClaimType,
    DraftSection,
    FoundLaw,
    InformationGap,
    LegalIssue,
    Side,
    StrategySection,
)

logger = logging.getLogger(__name__)


@dataclass
class OutlineEntry:
    section_id: str
    heading: str
    is_current: bool = False


@dataclass
class SectionContext:
    """Everything the writer needs for one section"""
    index: int
    section: StrategySection
    outline: List[OutlineEntry]
    claims: List[Claim]
    laws: List[FoundLaw]
    file_ids: List[str]
    dispute: Optional[LegalIssue]
    completed_sections: List[DraftSection] = field(default_factory=list)


class ContextStore:
    """Per-run projection of pipeline state"""

    def __init__(
        self,
        case_summary: str = "",
        parties: Optional[Dict[str, str]] = None,
        case_metadata: Optional[CaseMetadata] = None,
        brief_type: str = "complaint",
        legal_issues: Optional[List[LegalIssue]] = None,
        documents: Optional[List[CaseDocument]] = None,
        information_gaps: Optional[List[InformationGap]] = None,
    ):
        self.case_summary = case_summary
        self.parties: Dict[str, str] = dict(parties or {})
        self.case_metadata = case_metadata or CaseMetadata()
        self.brief_type = brief_type
        self.legal_issues: List[LegalIssue] = list(legal_issues or [])
        self.documents: List[CaseDocument] = list(documents or [])
        self.information_gaps: List[InformationGap] = list(information_gaps or [])

        self._claims: Dict[str, Claim] = {}
        self.sections: List[StrategySection] = []
        self.reasoning_summary = ""
        self.supplemented_law_ids: List[str] = []
        self._laws: Dict[str, FoundLaw] = {}
        self.draft_sections: List[DraftSection] = []

    # =========================================================================
    # Case seed
    # =========================================================================

    def issue(self, issue_id: Optional[str]) -> Optional[LegalIssue]:
        if not issue_id:
            return None
        for issue in self.legal_issues:
            if issue.id == issue_id:
                return issue
        return None

    def document(self, file_id: str) -> Optional[CaseDocument]:
        for document in self.documents:
            if document.id == file_id:
                return document
        return None

    # =========================================================================
    # Claims / sections
    # =========================================================================

    @property
    def claims(self) -> List[Claim]:
        return list(self._claims.values())

    def claim(self, claim_id: Optional[str]) -> Optional[Claim]:
        if not claim_id:
            return None
        return self._claims.get(claim_id)

    def set_strategy_output(self, claims: Iterable[Claim], sections: Iterable[StrategySection]) -> None:
        self._claims = {claim.id: claim for claim in claims}
        self.sections = list(sections)
        logger.info(f"Strategy stored: {len(self._claims)} claims, {len(self.sections)} sections")

    def set_reasoning(self, summary: str, supplemented_law_ids: Iterable[str]) -> None:
        self.reasoning_summary = summary
        self.supplemented_law_ids = list(dict.fromkeys(supplemented_law_ids))

    def section(self, section_id: str) -> Optional[StrategySection]:
        for section in self.sections:
            if section.id == section_id:
                return section
        return None

    def claims_by_section(self, section_id: str) -> List[Claim]:
        """Claims assigned to a section, in the section's listed order first"""
        result: List[Claim] = []
        seen = set()
        section = self.section(section_id)
        if section:
            for claim_id in section.claims:
                claim = self._claims.get(claim_id)
                if claim and claim_id not in seen:
                    result.append(claim)
                    seen.add(claim_id)
        for claim in self._claims.values():
            if claim.assigned_section == section_id and claim.id not in seen:
                result.append(claim)
                seen.add(claim.id)
        return result

    def claims_responding_to(self, claim_id: str) -> List[Claim]:
        return [c for c in self._claims.values() if c.responds_to == claim_id]

    def get_unrebutted(self) -> List[Claim]:
        """Opponent primary/rebuttal claims no claim of ours responds to"""
        answered = {
            c.responds_to for c in self._claims.values()
            if c.side == Side.OURS and c.responds_to
        }
        return [
            c for c in self._claims.values()
            if c.side == Side.THEIRS
            and c.claim_type in (ClaimType.PRIMARY, ClaimType.REBUTTAL)
            and c.id not in answered
        ]

    # =========================================================================
    # Authorities
    # =========================================================================

    @property
    def found_laws(self) -> List[FoundLaw]:
        return list(self._laws.values())

    def law(self, law_id: str) -> Optional[FoundLaw]:
        return self._laws.get(law_id)

    def has_law(self, law_id: str) -> bool:
        return law_id in self._laws

    def add_found_laws(self, laws: Iterable[FoundLaw]) -> List[FoundLaw]:
        """Append authorities not yet present; returns the newly added ones"""
        added = []
        for law in laws:
            if law.id in self._laws:
                continue
            self._laws[law.id] = law
            added.append(law)
        if added:
            logger.info(f"Authorities added: {len(added)} (total {len(self._laws)})")
        return added

    # =========================================================================
    # Drafting
    # =========================================================================

    def add_draft_section(self, draft: DraftSection) -> None:
        self.draft_sections.append(draft)

    def get_section_context(self, index: int) -> SectionContext:
        """
        Writer context for sections[index].

        Background: the full outline with the current section marked.
        Focus: the section's claims, authorities, files and dispute.
        Review: sections already drafted before this one.
        """
        section = self.sections[index]
        outline = [
            OutlineEntry(section_id=s.id, heading=s.heading, is_current=(i == index))
            for i, s in enumerate(self.sections)
        ]

        law_ids = list(dict.fromkeys(section.relevant_law_ids + section.argumentation.legal_basis))
        laws = [self._laws[law_id] for law_id in law_ids if law_id in self._laws]

        earlier_ids = {s.id for s in self.sections[:index]}
        completed = [d for d in self.draft_sections if d.section_id in earlier_ids]

        return SectionContext(
            index=index,
            section=section,
            outline=outline,
            claims=self.claims_by_section(section.id),
            laws=laws,
            file_ids=list(dict.fromkeys(section.relevant_file_ids)),
            dispute=self.issue(section.dispute_id),
            completed_sections=completed,
        )

    def to_brief(self) -> Dict[str, object]:
        """Serializable snapshot of the run's output"""
        return {
            "brief_type": self.brief_type,
            "reasoning_summary": self.reasoning_summary,
            "claims": [c.model_dump(mode="json") for c in self.claims],
            "sections": [s.model_dump(mode="json") for s in self.sections],
            "found_laws": [law.model_dump(mode="json") for law in self.found_laws],
            "draft_sections": [d.model_dump(mode="json") for d in self.draft_sections],
        }
