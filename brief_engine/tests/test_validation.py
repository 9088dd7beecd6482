"""
Tests for Strategy Validation & Enrichment
==========================================

Validation reports structural problems; enrichment must leave the claim graph
well formed whatever the model produced.
"""

import random

import pytest

from brief_engine.schemas import (
    ArgumentationFrame,
    Claim,
    ClaimType,
    PreCheckSeverity,
    PreCheckType,
    Side,
    StrategyOutput,
    StrategySection,
)
from brief_engine.validation import (
    enrich_strategy_output,
    find_responds_to_cycles,
    is_frame_section,
    structural_pre_check,
    validate_strategy_output,
)


@pytest.fixture
def plan(strategy_payload):
    return StrategyOutput.model_validate(strategy_payload)


def _claims_by_id(output: StrategyOutput):
    return {claim.id: claim for claim in output.claims}


# =============================================================================
# Validation
# =============================================================================

class TestValidateStrategyOutput:
    """Errors and warnings on model-produced plans"""

    def test_valid_plan(self, plan, legal_issues):
        result = validate_strategy_output(plan, legal_issues)
        assert result.valid, result.errors
        assert result.warnings == []

    def test_uncovered_issue(self, plan, legal_issues):
        plan.sections = [s for s in plan.sections if s.dispute_id != "issue_2"]
        for claim in plan.claims:
            if claim.dispute_id == "issue_2":
                claim.assigned_section = "sec_1"
        result = validate_strategy_output(plan, legal_issues)
        assert "Issue issue_2 is not covered by any section" in result.errors

    def test_unassigned_ours_claim(self, plan, legal_issues):
        _claims_by_id(plan)["c1"].assigned_section = None
        result = validate_strategy_output(plan, legal_issues)
        assert any("c1 is not assigned" in e for e in result.errors)

    def test_rebuttal_without_parent(self, plan, legal_issues):
        _claims_by_id(plan)["c3"].responds_to = None
        result = validate_strategy_output(plan, legal_issues)
        assert any("rebuttal claim c3 has no responds_to" in e for e in result.errors)
        assert any("Opponent claim c2" in w for w in result.warnings)

    def test_primary_with_parent(self, plan, legal_issues):
        _claims_by_id(plan)["c4"].responds_to = "c5"
        result = validate_strategy_output(plan, legal_issues)
        assert any("Primary claim c4 must not respond" in e for e in result.errors)

    def test_cycle_reported(self, plan, legal_issues):
        claims = _claims_by_id(plan)
        claims["c2"].claim_type = ClaimType.REBUTTAL
        claims["c2"].responds_to = "c3"
        result = validate_strategy_output(plan, legal_issues)
        assert any(e.startswith("responds_to cycle") for e in result.errors)

    def test_legal_basis_outside_relevant_laws(self, plan, legal_issues):
        plan.sections[1].argumentation.legal_basis = ["B0000001-第 195 條"]
        result = validate_strategy_output(plan, legal_issues)
        assert any("legal_basis not in relevant_law_ids" in e for e in result.errors)

    def test_unknown_authority(self, plan, legal_issues):
        plan.sections[1].relevant_law_ids = ["B0000001-第 195 條"]
        plan.sections[1].argumentation.legal_basis = ["B0000001-第 195 條"]
        known = ["B0000001-第 184 條"]
        result = validate_strategy_output(plan, legal_issues, known_law_ids=known)
        assert result.errors == ["Section sec_2 references unknown authorities: B0000001-第 195 條"]
        # Without a known set authority IDs are not checked
        assert validate_strategy_output(plan, legal_issues).valid

    def test_unknown_references(self, plan, legal_issues):
        plan.sections[0].claims.append("c99")
        plan.sections[0].dispute_id = "issue_9"
        result = validate_strategy_output(plan, legal_issues)
        assert any("unknown claim c99" in e for e in result.errors)
        assert any("unknown issue issue_9" in e for e in result.errors)

    def test_duplicate_section_ids(self, plan, legal_issues):
        plan.sections[1].id = "sec_1"
        result = validate_strategy_output(plan, legal_issues)
        assert "Duplicate section id: sec_1" in result.errors

    def test_frame_section_may_be_empty(self, plan, legal_issues):
        plan.sections.append(StrategySection(id="sec_end", section="肆、結論"))
        assert validate_strategy_output(plan, legal_issues).valid

    def test_argument_section_must_list_claims(self, plan, legal_issues):
        plan.sections.append(StrategySection(id="sec_x", section="肆、其他爭點", dispute_id="issue_1"))
        result = validate_strategy_output(plan, legal_issues)
        assert any("sec_x" in e and "lists no claims" in e for e in result.errors)

    def test_is_frame_section(self):
        assert is_frame_section(StrategySection(id="a", section="壹、前言"))
        assert is_frame_section(StrategySection(id="b", section="Conclusion"))
        assert not is_frame_section(StrategySection(id="c", section="貳、侵權行為"))


class TestCycles:
    """find_responds_to_cycles"""

    def _claim(self, claim_id, parent):
        return Claim(id=claim_id, side=Side.OURS, claim_type=ClaimType.SUPPORTING, responds_to=parent)

    def test_no_cycle(self):
        claims = {c.id: c for c in [self._claim("a", None), self._claim("b", "a"), self._claim("c", "b")]}
        assert find_responds_to_cycles(claims) == []

    def test_two_cycle(self):
        claims = {c.id: c for c in [self._claim("a", "b"), self._claim("b", "a")]}
        cycles = find_responds_to_cycles(claims)
        assert len(cycles) == 1
        assert sorted(cycles[0]) == ["a", "b"]

    def test_self_loop_and_tail(self):
        claims = {c.id: c for c in [self._claim("x", "x"), self._claim("y", "x")]}
        assert find_responds_to_cycles(claims) == [["x"]]


# =============================================================================
# Enrichment
# =============================================================================

def _random_output(rng: random.Random, issue_ids):
    claim_ids = [f"c{n}" for n in range(rng.randint(0, 8))]
    section_ids = [f"sec_{n}" for n in range(rng.randint(0, 4))]
    # Occasional duplicate section IDs
    if section_ids and rng.random() < 0.3:
        section_ids.append(section_ids[0])

    def maybe(values, extra):
        pool = list(values) + list(extra) + [None]
        return rng.choice(pool)

    claims = [
        Claim(
            id=claim_id,
            side=rng.choice([Side.OURS, Side.THEIRS]),
            claim_type=rng.choice(list(ClaimType)),
            statement=f"statement {claim_id}",
            assigned_section=maybe(section_ids, ["sec_missing"]),
            dispute_id=maybe(issue_ids, ["issue_bogus"]),
            responds_to=maybe(claim_ids, ["c_missing"]),
        )
        for claim_id in claim_ids
    ]
    sections = [
        StrategySection(
            id=section_id,
            section=rng.choice(["貳、爭點", "參、損害", "結論"]),
            dispute_id=maybe(issue_ids, ["issue_bogus"]),
            claims=rng.sample(claim_ids + ["c_missing"], k=rng.randint(0, min(3, len(claim_ids) + 1))),
            argumentation=ArgumentationFrame(legal_basis=rng.sample(["L1", "L2", "L3"], k=rng.randint(0, 2))),
            relevant_law_ids=rng.sample(["L1", "L2"], k=rng.randint(0, 2)),
        )
        for section_id in section_ids
    ]
    return StrategyOutput(claims=claims, sections=sections)


class TestEnrichment:
    """Graph invariants after enrichment, over a seeded random grid"""

    def _assert_invariants(self, output: StrategyOutput):
        section_ids = [s.id for s in output.sections]
        assert len(section_ids) == len(set(section_ids))

        claims = _claims_by_id(output)
        assert len(claims) == len(output.claims)

        for section in output.sections:
            assert all(c in claims for c in section.claims)
            assert set(section.argumentation.legal_basis) <= set(section.relevant_law_ids)

        for claim in claims.values():
            if claim.claim_type == ClaimType.PRIMARY:
                assert claim.responds_to is None, claim
            else:
                assert claim.responds_to in claims, claim
                assert claim.responds_to != claim.id
            if claim.side == Side.OURS:
                assert claim.assigned_section in section_ids, claim
            if claim.assigned_section is not None:
                assert claim.assigned_section in section_ids

        assert find_responds_to_cycles(claims) == []

    @pytest.mark.parametrize("seed", range(200))
    def test_random_plans(self, seed, legal_issues):
        rng = random.Random(seed)
        output = _random_output(rng, [issue.id for issue in legal_issues])
        enriched = enrich_strategy_output(output, legal_issues)
        self._assert_invariants(enriched)

    def test_valid_plan_unchanged(self, plan, legal_issues):
        before = plan.model_dump()
        enriched = enrich_strategy_output(plan, legal_issues)
        assert enriched.model_dump() == before

    def test_unknown_authorities_pruned(self, plan, legal_issues):
        plan.sections[0].relevant_law_ids.append("B0000001-第 999 條")
        plan.sections[0].argumentation.legal_basis.append("B0000001-第 999 條")
        known = ["B0000001-第 184 條"]
        enriched = enrich_strategy_output(plan, legal_issues, known_law_ids=known)
        assert enriched.sections[0].relevant_law_ids == ["B0000001-第 184 條"]
        assert enriched.sections[0].argumentation.legal_basis == ["B0000001-第 184 條"]
        assert validate_strategy_output(enriched, legal_issues, known_law_ids=known).valid

    def test_cycle_broken(self, legal_issues):
        output = StrategyOutput(
            claims=[
                Claim(id="a", side=Side.OURS, claim_type=ClaimType.REBUTTAL, responds_to="b",
                      assigned_section="s1", dispute_id="issue_1"),
                Claim(id="b", side=Side.THEIRS, claim_type=ClaimType.REBUTTAL, responds_to="a",
                      assigned_section="s1", dispute_id="issue_1"),
            ],
            sections=[StrategySection(id="s1", section="貳、爭點", dispute_id="issue_1", claims=["a", "b"])],
        )
        enriched = enrich_strategy_output(output, legal_issues)
        self._assert_invariants(enriched)

    def test_orphan_ours_claim_goes_to_issue_section(self, plan, legal_issues):
        plan.claims.append(Claim(id="c7", side=Side.OURS, statement="補充", dispute_id="issue_2"))
        enriched = enrich_strategy_output(plan, legal_issues)
        claims = _claims_by_id(enriched)
        assert claims["c7"].assigned_section == "sec_2"
        assert "c7" in enriched.sections[1].claims

    def test_section_created_when_missing(self, legal_issues):
        output = StrategyOutput(claims=[Claim(id="c1", side=Side.OURS, statement="x")], sections=[])
        enriched = enrich_strategy_output(output, legal_issues)
        assert [s.id for s in enriched.sections] == ["sec_main"]
        assert enriched.claims[0].assigned_section == "sec_main"

    def test_section_issue_backfilled_from_claims(self, legal_issues):
        output = StrategyOutput(
            claims=[Claim(id="c1", side=Side.OURS, statement="x", assigned_section="s1", dispute_id="issue_1")],
            sections=[StrategySection(id="s1", section="貳、爭點", claims=["c1"])],
        )
        enriched = enrich_strategy_output(output, legal_issues)
        assert enriched.sections[0].dispute_id == "issue_1"


# =============================================================================
# Structural pre-check
# =============================================================================

class TestStructuralPreCheck:
    """Deterministic review findings"""

    def test_clean_plan(self, plan, legal_issues):
        assert structural_pre_check(plan.claims, plan.sections, legal_issues) == []

    def test_findings(self, plan, legal_issues):
        claims = _claims_by_id(plan)
        claims["c1"].assigned_section = None
        claims["c3"].responds_to = None
        sections = [s for s in plan.sections if s.dispute_id != "issue_2"]

        findings = structural_pre_check(plan.claims, sections, legal_issues)
        by_type = {(f.type, f.severity) for f in findings}
        assert (PreCheckType.UNASSIGNED_CLAIM, PreCheckSeverity.CRITICAL) in by_type
        assert (PreCheckType.UNCOVERED_OPPONENT_CLAIM, PreCheckSeverity.WARNING) in by_type
        assert (PreCheckType.UNCOVERED_DISPUTE, PreCheckSeverity.CRITICAL) in by_type

    def test_claim_in_removed_section_is_unassigned(self, plan, legal_issues):
        sections = [s for s in plan.sections if s.id != "sec_2"]
        findings = structural_pre_check(plan.claims, sections, legal_issues)
        unassigned = [f for f in findings if f.type == PreCheckType.UNASSIGNED_CLAIM]
        assert len(unassigned) == 2  # c4, c6
