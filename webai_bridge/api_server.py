import asyncio
import base64
import binascii
import mimetypes
import secrets
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import APIKeyHeader
from starlette.responses import JSONResponse, StreamingResponse

from .browser_automation import debug_print
from .errors import ReinitFailedError
from .streaming import (
    SSE_DONE,
    build_chat_completion,
    new_completion_id,
    openai_error_payload,
    result_to_content,
    sse_chunk,
    sse_error,
    sse_wait_for_task_with_keepalive,
)

API_KEY_HEADER = APIKeyHeader(name="Authorization", auto_error=False)

MAX_IMAGE_BYTES = 10 * 1024 * 1024


def _decode_data_url(url: str) -> Optional[Tuple[str, bytes]]:
    if not url.startswith("data:") or "," not in url:
        return None
    header, data = url.split(",", 1)
    mime_type = header[5:].split(";")[0].strip().lower()
    if not mime_type.startswith("image/") or ";base64" not in header:
        return None
    try:
        raw = base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError):
        return None
    if not raw or len(raw) > MAX_IMAGE_BYTES:
        return None
    return mime_type, raw


def extract_prompt_and_images(messages: list) -> Tuple[str, List[Tuple[str, bytes]]]:
    """Text and decoded `data:` images of the last user message."""
    last_user = next(
        (m for m in reversed(messages) if isinstance(m, dict) and m.get("role") == "user"),
        None,
    )
    if last_user is None:
        return "", []

    content = last_user.get("content")
    if isinstance(content, str):
        return content, []

    text_parts: List[str] = []
    images: List[Tuple[str, bytes]] = []
    for part in content if isinstance(content, list) else []:
        if not isinstance(part, dict):
            continue
        if part.get("type") == "text":
            text_parts.append(str(part.get("text") or ""))
        elif part.get("type") == "image_url":
            image_url = part.get("image_url")
            url = image_url.get("url", "") if isinstance(image_url, dict) else str(image_url or "")
            decoded = _decode_data_url(url)
            if decoded is None:
                debug_print("⚠️ Skipping image that is not a valid base64 data URL")
                continue
            images.append(decoded)
    return "\n".join(p for p in text_parts if p), images


def write_temp_images(images: List[Tuple[str, bytes]]) -> Tuple[Optional[Path], List[str]]:
    if not images:
        return None, []
    temp_dir = Path(tempfile.mkdtemp(prefix="webai-bridge-"))
    paths = []
    for index, (mime_type, raw) in enumerate(images):
        ext = mimetypes.guess_extension(mime_type) or ".png"
        path = temp_dir / f"image_{index}{ext}"
        path.write_bytes(raw)
        paths.append(str(path))
    return temp_dir, paths


def _cleanup_temp_dir(temp_dir: Optional[Path]) -> None:
    if temp_dir is not None:
        shutil.rmtree(temp_dir, ignore_errors=True)


def _error_response(status_code: int, message: str, type: str, code: object) -> JSONResponse:  # noqa: A002
    return JSONResponse(status_code=status_code, content=openai_error_payload(message, type, code))


def build_router(core) -> APIRouter:  # noqa: ANN001
    router = APIRouter()

    async def verify_api_key(key: Optional[str] = Depends(API_KEY_HEADER)) -> str:
        if not key or not key.startswith("Bearer "):
            raise HTTPException(
                status_code=401,
                detail="Invalid Authorization header. Expected 'Bearer YOUR_API_KEY'",
            )
        api_key = key[7:].strip()
        expected = str(((core.get_config().get("server") or {}).get("auth")) or "")
        if not expected or not secrets.compare_digest(api_key, expected):
            raise HTTPException(status_code=401, detail="Invalid API Key.")
        return api_key

    @router.get("/health")
    async def health_check():
        workers = core.pool.describe() if core.pool is not None else []
        live = sum(1 for w in workers if w.get("state") == "ready")
        return {
            "status": "healthy" if workers and live == len(workers) else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "workers": workers,
        }

    @router.get("/v1/models")
    async def list_models(api_key: str = Depends(verify_api_key)):  # noqa: ARG001
        models = core.pool.get_models() if core.pool is not None else []
        return {
            "object": "list",
            "data": [{"object": "model", **m} for m in models],
        }

    def _stats():
        if core.stats is None:
            raise HTTPException(status_code=503, detail="Request statistics are not loaded yet.")
        return core.stats

    @router.get("/v1/stats")
    async def get_stats(start: Optional[str] = None, end: Optional[str] = None, api_key: str = Depends(verify_api_key)):  # noqa: ARG001
        stats = _stats()
        if start or end:
            try:
                return stats.get_stats_range(start or end, end or start)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
        return stats.get_today_stats()

    @router.delete("/v1/stats")
    async def delete_stats(start: str, end: str, api_key: str = Depends(verify_api_key)):  # noqa: ARG001
        stats = _stats()
        try:
            return stats.clear_stats_range(start, end)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.post("/v1/chat/completions")
    async def chat_completions(request: Request, api_key: str = Depends(verify_api_key)):  # noqa: ARG001
        try:
            body = await request.json()
        except Exception:
            raise HTTPException(status_code=400, detail="Invalid JSON in request body.")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object.")

        model = str(body.get("model") or "").strip()
        messages = body.get("messages")
        stream = bool(body.get("stream", False))
        if not model:
            raise HTTPException(status_code=400, detail="Missing 'model' in request body.")
        if not isinstance(messages, list) or not messages:
            raise HTTPException(status_code=400, detail="Missing 'messages' in request body.")

        pool = core.pool
        if pool is None or not pool.supports(model):
            return _error_response(404, f"The model '{model}' does not exist.", "invalid_request_error", "model_not_found")

        prompt, images = extract_prompt_and_images(messages)
        if not prompt and not images:
            raise HTTPException(status_code=400, detail="The last user message is empty.")

        policy = pool.get_image_policy(model)
        if policy == "required" and not images:
            return _error_response(400, f"Model '{model}' requires an input image.", "invalid_request_error", "image_required")
        if policy == "forbidden" and images:
            return _error_response(400, f"Model '{model}' does not accept input images.", "invalid_request_error", "image_forbidden")

        temp_dir, paths = write_temp_images(images)
        completion_id = new_completion_id()
        meta = {"id": completion_id[-8:], "model": model}
        debug_print(f"📨 [{meta['id']}] chat completion for {model} (stream={stream}, images={len(paths)})")

        if not stream:
            try:
                result = await pool.generate({}, prompt, paths, model, meta)
            except ReinitFailedError as e:
                return _error_response(503, str(e), "service_unavailable", "reinit_failed")
            finally:
                _cleanup_temp_dir(temp_dir)
            if result.get("error"):
                return _error_response(502, result["error"], "upstream_error", "generation_failed")
            return build_chat_completion(completion_id, model, result_to_content(result.get("data")))

        keepalive = float(((core.get_config().get("server") or {}).get("keepalive_seconds")) or 1.0)

        async def generate_stream():
            task = asyncio.create_task(pool.generate({}, prompt, paths, model, meta))
            try:
                async for keepalive_line in sse_wait_for_task_with_keepalive(task, interval_seconds=keepalive):
                    yield keepalive_line
                try:
                    result = task.result()
                except ReinitFailedError as e:
                    yield sse_error(str(e), "service_unavailable", "reinit_failed")
                    yield SSE_DONE
                    return
                if result.get("error"):
                    yield sse_error(result["error"], "upstream_error", "generation_failed")
                    yield SSE_DONE
                    return
                yield sse_chunk(completion_id, model, {"role": "assistant", "content": result_to_content(result.get("data"))})
                yield sse_chunk(completion_id, model, {}, finish_reason="stop")
                yield SSE_DONE
            finally:
                if not task.done():
                    task.cancel()
                _cleanup_temp_dir(temp_dir)

        return StreamingResponse(generate_stream(), media_type="text/event-stream")

    return router
