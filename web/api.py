"""
Agent invocation REST API endpoints.
"""

import asyncio
import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from agent.core import AgentRequest, ModelInvocationError
import web.state as _state

logger = logging.getLogger(__name__)

router = APIRouter()


def _optional_id(body: dict, key: str) -> str:
    value = body.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value.strip()


@router.post("/api/invoke")
async def invoke(request: Request):
    """Run the agent on one user request and return its final summary."""
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Request body must be JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

    query = body.get("query")
    if not isinstance(query, str) or not query.strip():
        return JSONResponse({"error": "query is required"}, status_code=400)

    try:
        session_id = _optional_id(body, "session_id") or f"session-{int(time.time() * 1000)}"
        thread_id = _optional_id(body, "thread_id") or f"thread-user-{session_id}"
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    async with _state.thread_lock(thread_id):
        loop = _state.build_agent_loop()
        try:
            result = await loop.handle(
                AgentRequest(query=query.strip(), thread_id=thread_id, session_id=session_id)
            )
        except ModelInvocationError as e:
            logger.error(f"Invocation failed for {thread_id}: {e}")
            return JSONResponse(
                {"error": str(e), "thread_id": thread_id, "session_id": session_id},
                status_code=502,
            )

    return {
        "summary_text": result.summary_text,
        "thread_id": result.thread_id,
        "session_id": session_id,
        "status": result.status,
        "turns_taken": result.turns_taken,
        "written_files": sorted(result.written_files),
    }


@router.get("/api/threads/{thread_id}")
async def get_thread(thread_id: str):
    """Return the stored checkpoint of a thread."""
    checkpoint = await asyncio.to_thread(_state.get_store().get, thread_id)
    if checkpoint is None:
        return JSONResponse({"error": "Thread not found"}, status_code=404)
    return {
        "thread_id": checkpoint.thread_id,
        "created_at": checkpoint.created_at,
        "updated_at": checkpoint.updated_at,
        "message_count": len(checkpoint.messages),
        "messages": checkpoint.messages,
        "session_state": checkpoint.session_state,
    }
