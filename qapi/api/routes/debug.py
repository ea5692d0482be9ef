# Copyright 2025 Ralph Lemke
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Debug session endpoints used by interactive tooling."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from ..dependencies import get_debug_manager

router = APIRouter(prefix="/api/debug")


@router.post("/sessions")
def api_start_session(payload: dict = Body(...), manager=Depends(get_debug_manager)):
    """Start a replay.

    Body keys: ``option`` (``debugList``, ``specific`` or ``latest``),
    ``code``, ``schema``, ``namespaceId`` and, depending on the option,
    ``heights`` or ``startingHeight``. Optional: ``accountId``,
    ``functionName``, ``contractFilter``.
    """
    missing = [k for k in ("option", "code", "schema", "namespaceId") if not payload.get(k)]
    if missing:
        return JSONResponse({"error": f"missing fields: {', '.join(missing)}"}, status_code=400)
    try:
        handle = manager.run(
            payload["option"],
            payload["code"],
            payload["schema"],
            payload["namespaceId"],
            starting_height=payload.get("startingHeight"),
            heights=payload.get("heights"),
            account_id=payload.get("accountId") or "debug",
            function_name=payload.get("functionName"),
            contract_filter=payload.get("contractFilter"),
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse(handle.to_dict(), status_code=201)


@router.get("/sessions")
def api_sessions(manager=Depends(get_debug_manager)):
    """Return all debug sessions of this process."""
    return JSONResponse([h.to_dict() for h in manager.list_sessions()])


@router.get("/sessions/{session_id}")
def api_session_detail(session_id: str, manager=Depends(get_debug_manager)):
    """Return one debug session."""
    handle = manager.get(session_id)
    if handle is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    return JSONResponse(handle.to_dict())


@router.get("/sessions/{session_id}/logs")
def api_session_logs(session_id: str, drain: bool = True, manager=Depends(get_debug_manager)):
    """Return buffered log entries; drained by default."""
    handle = manager.get(session_id)
    if handle is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    entries = handle.drain() if drain else handle.buffer.snapshot()
    return JSONResponse(
        {
            "sessionId": session_id,
            "status": handle.status,
            "running": handle.is_running,
            "entries": [e.to_dict() for e in entries],
        }
    )


@router.get("/sessions/{session_id}/rows/{table}")
def api_session_rows(session_id: str, table: str, manager=Depends(get_debug_manager)):
    """Return rows the session wrote to *table*."""
    handle = manager.get(session_id)
    if handle is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    return JSONResponse(handle.rows(table))


@router.post("/sessions/{session_id}/stop")
def api_stop_session(session_id: str, manager=Depends(get_debug_manager)):
    """Stop a session before its next height."""
    handle = manager.get(session_id)
    if handle is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    stopped = manager.stop(handle)
    return JSONResponse({"sessionId": session_id, "stopped": stopped})


@router.delete("/sessions/{session_id}")
def api_delete_session(session_id: str, manager=Depends(get_debug_manager)):
    """Stop and forget a session."""
    if not manager.remove(session_id, timeout=5.0):
        return JSONResponse({"error": "not found"}, status_code=404)
    return JSONResponse({"sessionId": session_id, "deleted": True})
