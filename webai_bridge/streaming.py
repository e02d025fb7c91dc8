import asyncio
import json
import time
import uuid
from typing import AsyncIterator, Optional

SSE_KEEPALIVE = ": keep-alive\n\n"
SSE_DONE = "data: [DONE]\n\n"


def openai_error_payload(message: str, type: str, code: object) -> dict:  # noqa: A002
    return {"error": {"message": str(message), "type": str(type), "code": code}}


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4()}"


def result_to_content(data) -> str:  # noqa: ANN001
    """Render an adapter `data` payload (text plus image URLs) as message content."""
    if isinstance(data, str):
        return data
    if not isinstance(data, dict):
        return ""
    parts = []
    text = str(data.get("text") or "")
    if text:
        parts.append(text)
    for image_url in data.get("images") or []:
        parts.append(f"![Generated Image]({image_url})")
    return "\n\n".join(parts)


def build_chat_completion(completion_id: str, model: str, content: str, *, finish_reason: str = "stop") -> dict:
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {
            "prompt_tokens": 0,
            "completion_tokens": len(content),
            "total_tokens": len(content),
        },
    }


def sse_chunk(completion_id: str, model: str, delta: dict, *, finish_reason: Optional[str] = None) -> str:
    chunk = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(chunk)}\n\n"


def sse_error(message: str, type: str = "api_error", code: object = None) -> str:  # noqa: A002
    return f"data: {json.dumps(openai_error_payload(message, type, code))}\n\n"


async def sse_wait_for_task_with_keepalive(task, *, interval_seconds: float = 1.0) -> AsyncIterator[str]:  # noqa: ANN001
    interval = float(max(0.05, interval_seconds))
    while True:
        done, _ = await asyncio.wait({task}, timeout=interval)
        if task in done:
            break
        yield SSE_KEEPALIVE
