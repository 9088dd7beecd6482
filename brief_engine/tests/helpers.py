"""
Wire payload builders shared by the test modules
================================================

Each helper builds what one faked backend sends back: chat-completions SSE
frames and bodies, chat completions, citations messages and law records.
"""

import json
from typing import Any, Dict, List, Optional

import httpx


def sse_body(frames: List[Dict[str, Any]], done: bool = True) -> bytes:
    """Chat-completions SSE stream for the given frames"""
    body = "".join(f"data: {json.dumps(frame, ensure_ascii=False)}\n\n" for frame in frames)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


def text_frames(text: str, pieces: int = 3) -> List[Dict[str, Any]]:
    size = max(1, len(text) // pieces)
    parts = [text[i:i + size] for i in range(0, len(text), size)]
    return [{"choices": [{"index": 0, "delta": {"content": part}}]} for part in parts]


def tool_call_frames(
    name: str,
    arguments: Dict[str, Any],
    call_id: str = "call_1",
    index: int = 0,
    pieces: int = 3,
) -> List[Dict[str, Any]]:
    """One tool call streamed as true incremental argument deltas"""
    raw = json.dumps(arguments, ensure_ascii=False)
    size = max(1, len(raw) // pieces)
    chunks = [raw[i:i + size] for i in range(0, len(raw), size)]
    frames = [{
        "choices": [{
            "index": 0,
            "delta": {"tool_calls": [{"index": index, "id": call_id, "type": "function",
                                      "function": {"name": name, "arguments": ""}}]},
        }]
    }]
    for chunk in chunks:
        frames.append({
            "choices": [{"index": 0, "delta": {"tool_calls": [{"index": index, "function": {"arguments": chunk}}]}}]
        })
    return frames


def finish_frame(reason: str = "stop", prompt_tokens: int = 10, completion_tokens: int = 5) -> Dict[str, Any]:
    return {
        "choices": [{"index": 0, "delta": {}, "finish_reason": reason}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


def chat_completion(content: str, finish_reason: str = "stop") -> Dict[str, Any]:
    return {
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}],
        "usage": {"prompt_tokens": 100, "completion_tokens": 50},
    }


def law_payload(law_id: str, law_name: str, article_no: str, content: str) -> Dict[str, Any]:
    return {"_id": law_id, "law_name": law_name, "article_no": article_no, "content": content}


def request_json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content.decode("utf-8"))


LAW_184 = law_payload(
    "B0000001-第 184 條",
    "民法",
    "第 184 條",
    "因故意或過失，不法侵害他人之權利者，負損害賠償責任。故意以背於善良風俗之方法，加損害於他人者亦同。",
)


LAW_195 = law_payload(
    "B0000001-第 195 條",
    "民法",
    "第 195 條",
    "不法侵害他人之身體、健康、名譽、自由、信用、隱私、貞操，或不法侵害其他人格法益而情節重大者，"
    "被害人雖非財產上之損害，亦得請求賠償相當之金額。",
)


def citations_message(blocks: List[Dict[str, Any]], stop_reason: Optional[str] = "end_turn") -> Dict[str, Any]:
    return {
        "id": "msg_test",
        "type": "message",
        "role": "assistant",
        "content": blocks,
        "stop_reason": stop_reason,
        "usage": {"input_tokens": 200, "output_tokens": 80},
    }
