"""
Shared fixtures for Brief Engine tests
======================================

Backends are faked with httpx.MockTransport; the wire payloads they return
are built with the helpers in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from brief_engine.config import Settings
from brief_engine.documents import InMemoryDocumentStore
from brief_engine.schemas import CaseDocument, LegalIssue


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def settings():
    """Settings with every backend configured and no retry delay"""
    return Settings(
        _env_file=None,
        gateway_api_key="test-gateway-key",
        citations_api_key="test-citations-key",
        law_search_base_url="http://search.test",
        embedding_model="test-embedding",
        llm_retry_base_delay=0,
        reasoning_soft_timeout=1000.0,
        reasoning_timeout=1000.0,
    )


@pytest.fixture
def legal_issues():
    return [
        LegalIssue(
            id="issue_1",
            title="侵權行為責任",
            our_position="被告駕車闖紅燈，應負侵權行為損害賠償責任",
            their_position="原告自行違規穿越馬路，與有過失",
            key_evidence=["f1", "f2"],
        ),
        LegalIssue(
            id="issue_2",
            title="精神慰撫金數額",
            our_position="原告受傷住院兩週，請求慰撫金新台幣20萬元",
            their_position="慰撫金請求過高",
            key_evidence=["f3"],
        ),
    ]


@pytest.fixture
def case_documents():
    return [
        CaseDocument(id="f1", filename="起訴狀.pdf", summary="原告起訴請求損害賠償"),
        CaseDocument(id="f2", filename="道路交通事故初步分析研判表.pdf", summary="被告闖紅燈為肇事主因"),
        CaseDocument(id="f3", filename="診斷證明書.pdf", summary="左側鎖骨骨折，住院14日"),
    ]


@pytest.fixture
def document_texts():
    return {
        "f1": "原告起訴狀\n\n一、被告於民國112年3月1日駕駛自用小客車闖紅燈，撞擊行走於行人穿越道之原告。\n"
              "二、原告因此受有左側鎖骨骨折之傷害。",
        "f2": "道路交通事故初步分析研判表\n\n肇事原因：\n被告駕駛自用小客車闖紅燈，為肇事主因。\n原告無肇事因素。",
        "f3": "診斷證明書\n\n診斷病名：\n一、左側鎖骨骨折\n\n醫師囑言：\n病患於112年3月1日至3月14日住院治療，宜休養三個月。",
    }


@pytest.fixture
def document_store(document_texts):
    return InMemoryDocumentStore(document_texts)


@pytest.fixture
def strategy_payload():
    """A valid plan covering both issues"""
    return {
        "claims": [
            {"id": "c1", "side": "ours", "claim_type": "primary", "statement": "被告闖紅燈應負侵權責任",
             "assigned_section": "sec_1", "dispute_id": "issue_1"},
            {"id": "c2", "side": "theirs", "claim_type": "primary", "statement": "原告與有過失",
             "assigned_section": "sec_1", "dispute_id": "issue_1"},
            {"id": "c3", "side": "ours", "claim_type": "rebuttal", "statement": "原告行走於行人穿越道並無過失",
             "assigned_section": "sec_1", "dispute_id": "issue_1", "responds_to": "c2"},
            {"id": "c4", "side": "ours", "claim_type": "primary", "statement": "原告得請求慰撫金20萬元",
             "assigned_section": "sec_2", "dispute_id": "issue_2"},
            {"id": "c5", "side": "theirs", "claim_type": "primary", "statement": "慰撫金過高",
             "assigned_section": "sec_2", "dispute_id": "issue_2"},
            {"id": "c6", "side": "ours", "claim_type": "rebuttal", "statement": "傷勢嚴重，金額相當",
             "assigned_section": "sec_2", "dispute_id": "issue_2", "responds_to": "c5"},
        ],
        "sections": [
            {"id": "sec_1", "section": "貳、侵權行為責任", "dispute_id": "issue_1", "claims": ["c1", "c2", "c3"],
             "argumentation": {"legal_basis": ["B0000001-第 184 條"], "fact_application": "被告闖紅燈",
                               "conclusion": "被告應負賠償責任"},
             "relevant_file_ids": ["f1", "f2"], "relevant_law_ids": ["B0000001-第 184 條"]},
            {"id": "sec_2", "section": "參、精神慰撫金", "dispute_id": "issue_2", "claims": ["c4", "c5", "c6"],
             "argumentation": {"legal_basis": [], "fact_application": "住院14日", "conclusion": "請求20萬元"},
             "relevant_file_ids": ["f3"], "relevant_law_ids": []},
        ],
    }
