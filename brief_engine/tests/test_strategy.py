"""
Tests for the Strategy Stage
============================

Reasoning loop against a streamed gateway mock, then the JSON repair loop:
parse retry, validation retry, enrichment and the skeleton fallback.
"""

import copy
import json

import httpx
import pytest

from brief_engine.agent import TerminationReason
from brief_engine.context_store import ContextStore
from brief_engine.errors import MalformedOutputError
from brief_engine.llm.gateway import GatewayClient, UsageTotals
from brief_engine.retrieval import LawSearchSession
from brief_engine.schemas import ClaimType, FoundLaw, LawSource, Side
from brief_engine.strategy import (
    STRATEGY_JSON_RETRY,
    format_case_context,
    parse_strategy_payload,
    run_reasoning,
    run_structured_output,
    skeleton_strategy,
    summarize_plan,
)
from brief_engine.validation import validate_strategy_output
from helpers import (
    LAW_184,
    LAW_195,
    chat_completion,
    finish_frame,
    request_json,
    sse_body,
    text_frames,
    tool_call_frames,
)


class ScriptedGateway:
    """Replays one response per chat-completions request"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.payloads = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(request_json(request))
        response = self.responses.pop(0)
        if isinstance(response, httpx.Response):
            return response
        if isinstance(response, bytes):
            return httpx.Response(200, content=response, headers={"content-type": "text/event-stream"})
        return httpx.Response(200, json=chat_completion(response))


def _gateway(script: ScriptedGateway) -> GatewayClient:
    return GatewayClient(
        api_key="test-key",
        model="reasoning-model",
        base_url="http://gateway.test",
        retry_base_delay=0,
        transport=httpx.MockTransport(script),
    )


class SearchBackend:
    """Keyword search answers 195; batch lookup knows 184 and 195"""

    def __init__(self):
        self.paths = []
        self.batches = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = request_json(request)
        self.paths.append(request.url.path)
        if request.url.path == "/articles/batch":
            self.batches.append(payload["ids"])
            return httpx.Response(200, json={"results": [
                law for law in (LAW_184, LAW_195) if law["_id"] in payload["ids"]
            ]})
        return httpx.Response(200, json={"results": [LAW_195]})


def _search_session(backend: SearchBackend) -> LawSearchSession:
    return LawSearchSession(base_url="http://search.test", retry_base_delay=0, transport=httpx.MockTransport(backend))


@pytest.fixture
def store(legal_issues, case_documents):
    store = ContextStore(
        case_summary="原告遭被告駕車撞傷，請求損害賠償",
        parties={"plaintiff": "王小明", "defendant": "李大華"},
        brief_type="complaint",
        legal_issues=legal_issues,
        documents=case_documents,
    )
    # The plan in strategy_payload relies on 184
    store.add_found_laws([FoundLaw(
        id=LAW_184["_id"], law_name="民法", article_no="第 184 條", content=LAW_184["content"],
        source=LawSource.MENTIONED,
    )])
    return store


# =============================================================================
# Parsing / skeleton
# =============================================================================

class TestParseStrategyPayload:
    """Lenient item parsing"""

    def test_valid_payload(self, strategy_payload):
        output = parse_strategy_payload(strategy_payload)
        assert len(output.claims) == 6
        assert [s.id for s in output.sections] == ["sec_1", "sec_2"]

    def test_invalid_items_skipped(self, strategy_payload):
        payload = copy.deepcopy(strategy_payload)
        payload["claims"].append({"id": "bad", "side": "neutral"})
        payload["sections"].append({"id": "no_heading"})
        output = parse_strategy_payload(payload)
        assert len(output.claims) == 6
        assert len(output.sections) == 2

    def test_defaults_applied(self):
        output = parse_strategy_payload({
            "claims": [{"id": "c1", "side": "ours", "claim_type": "", "assigned_section": " ", "responds_to": ""}],
            "sections": [{"id": "s1", "section": "貳、爭點", "argumentation": None}],
        })
        claim = output.claims[0]
        assert claim.claim_type == ClaimType.PRIMARY
        assert claim.assigned_section is None
        assert claim.responds_to is None
        assert output.sections[0].argumentation.legal_basis == []

    def test_missing_arrays(self):
        with pytest.raises(MalformedOutputError):
            parse_strategy_payload({"claims": []})


class TestSkeleton:
    """Plan derived from the issues alone"""

    def test_skeleton_is_valid(self, legal_issues):
        output = skeleton_strategy(legal_issues)
        assert [s.dispute_id for s in output.sections] == ["issue_1", "issue_2"]
        assert validate_strategy_output(output, legal_issues).valid

    def test_skeleton_rebuts_their_position(self, legal_issues):
        claims = {c.id: c for c in skeleton_strategy(legal_issues).claims}
        assert claims["c1_theirs"].side == Side.THEIRS
        assert claims["c1_ours"].claim_type == ClaimType.REBUTTAL
        assert claims["c1_ours"].responds_to == "c1_theirs"

    def test_issue_without_their_position(self, legal_issues):
        legal_issues[1].their_position = ""
        claims = {c.id: c for c in skeleton_strategy(legal_issues).claims}
        assert "c2_theirs" not in claims
        assert claims["c2_ours"].claim_type == ClaimType.PRIMARY

    def test_summarize_plan(self, legal_issues):
        summary = summarize_plan(skeleton_strategy(legal_issues))
        assert summary["claims"] == 4
        assert summary["ours"] == summary["theirs"] == 2
        assert summary["dispute_ids"] == ["issue_1", "issue_2"]


# =============================================================================
# Structured output loop
# =============================================================================

class TestRunStructuredOutput:
    """parse -> validate -> retry -> enrich"""

    @pytest.mark.asyncio
    async def test_first_attempt_valid(self, store, settings, strategy_payload):
        script = ScriptedGateway([json.dumps(strategy_payload, ensure_ascii=False)])
        gateway = _gateway(script)
        usage = UsageTotals()
        outcome = await run_structured_output(gateway, store, settings, usage)
        await gateway.close()

        assert outcome.attempts == 1
        assert outcome.validation.valid
        assert not outcome.enriched and not outcome.fallback
        assert script.payloads[0]["response_format"] == {"type": "json_object"}
        assert script.payloads[0]["model"] == settings.writer_model
        assert usage.calls == 1

    @pytest.mark.asyncio
    async def test_parse_failure_retried(self, store, settings, strategy_payload):
        script = ScriptedGateway([
            "I am unable to comply.",
            "```json\n" + json.dumps(strategy_payload, ensure_ascii=False) + "\n```",
        ])
        gateway = _gateway(script)
        outcome = await run_structured_output(gateway, store, settings, UsageTotals())
        await gateway.close()

        assert outcome.attempts == 2
        assert outcome.validation.valid
        assert script.payloads[1]["messages"][-1]["content"] == STRATEGY_JSON_RETRY
        assert script.payloads[1]["messages"][-2] == {"role": "assistant", "content": "I am unable to comply."}

    @pytest.mark.asyncio
    async def test_skeleton_after_two_parse_failures(self, store, settings):
        script = ScriptedGateway(["no json", "still no json"])
        gateway = _gateway(script)
        outcome = await run_structured_output(gateway, store, settings, UsageTotals())
        await gateway.close()

        assert outcome.fallback
        assert [s.dispute_id for s in outcome.output.sections] == ["issue_1", "issue_2"]

    @pytest.mark.asyncio
    async def test_backend_error_falls_back(self, store, settings):
        script = ScriptedGateway([httpx.Response(400, text="bad request"), httpx.Response(400, text="bad request")])
        gateway = _gateway(script)
        outcome = await run_structured_output(gateway, store, settings, UsageTotals())
        await gateway.close()
        assert outcome.fallback
        assert len(script.payloads) == 2

    @pytest.mark.asyncio
    async def test_validation_retry_keeps_better_plan(self, store, settings, strategy_payload):
        broken = copy.deepcopy(strategy_payload)
        broken["sections"][1]["dispute_id"] = "issue_9"
        script = ScriptedGateway([
            json.dumps(broken, ensure_ascii=False),
            json.dumps(strategy_payload, ensure_ascii=False),
        ])
        gateway = _gateway(script)
        outcome = await run_structured_output(gateway, store, settings, UsageTotals())
        await gateway.close()

        assert outcome.attempts == 2
        assert outcome.validation.valid
        assert not outcome.enriched
        retry_prompt = script.payloads[1]["messages"][-1]["content"]
        assert retry_prompt.startswith("The plan has")
        assert "issue_9" in retry_prompt

    @pytest.mark.asyncio
    async def test_unknown_authority_retried_then_pruned(self, store, settings, strategy_payload):
        broken = copy.deepcopy(strategy_payload)
        broken["sections"][1]["relevant_law_ids"] = ["B0000001-第 999 條"]
        broken["sections"][1]["argumentation"]["legal_basis"] = ["B0000001-第 999 條"]
        payload = json.dumps(broken, ensure_ascii=False)
        script = ScriptedGateway([payload, payload])
        gateway = _gateway(script)
        outcome = await run_structured_output(gateway, store, settings, UsageTotals())
        await gateway.close()

        assert outcome.attempts == 2
        assert "B0000001-第 999 條" in script.payloads[1]["messages"][-1]["content"]
        assert outcome.enriched
        section = outcome.output.sections[1]
        assert section.relevant_law_ids == []
        assert section.argumentation.legal_basis == []
        assert outcome.output.sections[0].relevant_law_ids == [LAW_184["_id"]]

    @pytest.mark.asyncio
    async def test_enrichment_when_retry_still_invalid(self, store, settings, strategy_payload):
        broken = copy.deepcopy(strategy_payload)
        broken["sections"][1]["dispute_id"] = "issue_9"
        payload = json.dumps(broken, ensure_ascii=False)
        script = ScriptedGateway([payload, payload])
        gateway = _gateway(script)
        outcome = await run_structured_output(gateway, store, settings, UsageTotals())
        await gateway.close()

        assert outcome.enriched
        assert not outcome.validation.valid
        assert validate_strategy_output(outcome.output, store.legal_issues).valid
        assert outcome.output.sections[1].dispute_id == "issue_2"

    @pytest.mark.asyncio
    async def test_truncated_output_repaired(self, store, settings, strategy_payload):
        content = json.dumps(strategy_payload, ensure_ascii=False)
        cut = content[:content.index('{"id": "sec_2"')]
        truncated = httpx.Response(200, json=chat_completion(cut, finish_reason="length"))
        script = ScriptedGateway([truncated, json.dumps(strategy_payload, ensure_ascii=False)])
        gateway = _gateway(script)
        outcome = await run_structured_output(gateway, store, settings, UsageTotals())
        await gateway.close()

        # The repaired first plan misses issue_2, so the violation retry runs
        assert outcome.attempts == 2
        assert outcome.validation.valid


# =============================================================================
# Reasoning
# =============================================================================

class TestRunReasoning:
    """Tool loop wired to the reasoning tools"""

    @pytest.mark.asyncio
    async def test_finalize_records_summary(self, store, settings, document_store):
        script = ScriptedGateway([
            sse_body(tool_call_frames("read_file", {"file_id": "f2"}, call_id="r1") + [finish_frame("tool_calls")]),
            sse_body(
                tool_call_frames("finalize_strategy", {"reasoning_summary": "被告闖紅燈為肇事主因"}, call_id="r2")
                + [finish_frame("tool_calls")]
            ),
        ])
        gateway = _gateway(script)
        result, state = await run_reasoning(gateway, store, None, document_store, settings)
        await gateway.close()

        assert result.rounds == 2
        assert result.termination == TerminationReason.FINALIZED
        assert state.finalized
        assert store.reasoning_summary == "被告闖紅燈為肇事主因"
        tool_message = [m for m in script.payloads[1]["messages"] if m["role"] == "tool"][0]
        assert "肇事原因" in tool_message["content"]
        assert script.payloads[0]["stream"] is True
        assert [t["function"]["name"] for t in script.payloads[0]["tools"]] == [
            "search_law", "read_file", "finalize_strategy",
        ]

    @pytest.mark.asyncio
    async def test_text_answer_becomes_summary(self, store, settings, document_store):
        script = ScriptedGateway([sse_body(text_frames("兩個爭點均應先論責任成立") + [finish_frame()])])
        gateway = _gateway(script)
        result, state = await run_reasoning(gateway, store, None, document_store, settings)
        await gateway.close()

        assert result.termination == TerminationReason.COMPLETED
        assert not state.finalized
        assert store.reasoning_summary == "兩個爭點均應先論責任成立"

    @pytest.mark.asyncio
    async def test_search_without_session(self, store, settings, document_store):
        script = ScriptedGateway([
            sse_body(tool_call_frames("search_law", {"query": "侵權行為"}) + [finish_frame("tool_calls")]),
            sse_body(tool_call_frames("finalize_strategy", {"reasoning_summary": "ok"}) + [finish_frame("tool_calls")]),
        ])
        gateway = _gateway(script)
        await run_reasoning(gateway, store, None, document_store, settings)
        await gateway.close()

        tool_message = [m for m in script.payloads[1]["messages"] if m["role"] == "tool"][0]
        assert "not available" in tool_message["content"]

    @pytest.mark.asyncio
    async def test_search_hits_kept_without_finalize_ids(self, store, settings, document_store):
        script = ScriptedGateway([
            sse_body(tool_call_frames("search_law", {"query": "慰撫金 酌定"}) + [finish_frame("tool_calls")]),
            sse_body(tool_call_frames("finalize_strategy", {"reasoning_summary": "ok"}) + [finish_frame("tool_calls")]),
        ])
        gateway = _gateway(script)
        search = SearchBackend()
        async with _search_session(search) as session:
            _, state = await run_reasoning(gateway, store, session, document_store, settings)
        await gateway.close()

        law = store.law(LAW_195["_id"])
        assert law is not None
        assert law.source == LawSource.SUPPLEMENTED
        assert state.supplemented_law_ids == [LAW_195["_id"]]
        assert store.supplemented_law_ids == [LAW_195["_id"]]
        assert search.paths == ["/search/keyword"]

    @pytest.mark.asyncio
    async def test_finalize_fetches_ids_not_yet_known(self, store, settings, document_store):
        finalize = {"reasoning_summary": "ok", "supplemented_law_ids": [LAW_195["_id"], LAW_184["_id"]]}
        script = ScriptedGateway([
            sse_body(tool_call_frames("finalize_strategy", finalize) + [finish_frame("tool_calls")]),
        ])
        gateway = _gateway(script)
        search = SearchBackend()
        async with _search_session(search) as session:
            await run_reasoning(gateway, store, session, document_store, settings)
        await gateway.close()

        # 184 is already in the store, only 195 is fetched
        assert search.batches == [[LAW_195["_id"]]]
        assert store.law(LAW_195["_id"]).source == LawSource.SUPPLEMENTED
        assert store.law(LAW_184["_id"]).source == LawSource.MENTIONED
        assert store.supplemented_law_ids == [LAW_195["_id"]]


    def test_case_context_lists_issues_and_documents(self, store):
        context = format_case_context(store)
        assert "[issue_1] 侵權行為責任" in context
        assert "[f3] 診斷證明書.pdf" in context
        assert "plaintiff: 王小明" in context
