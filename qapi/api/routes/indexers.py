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

"""Indexer control endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from qapi.runtime.entities import IndexerFunctionSpec, mode_from_dict
from qapi.runtime.types import IndexerKey

from ..dependencies import get_service

router = APIRouter(prefix="/api/indexers")


@router.get("")
def api_indexers(status: str | None = None, service=Depends(get_service)):
    """Return every indexer with a run state, optionally filtered by status."""
    return JSONResponse(service.list(status))


@router.get("/{account_id}/{function_name}")
def api_indexer_detail(account_id: str, function_name: str, service=Depends(get_service)):
    """Return one indexer's run state."""
    status = service.status(IndexerKey(account_id, function_name))
    if status is None:
        return JSONResponse({"error": "not found"}, status_code=404)
    return JSONResponse(status)


@router.post("/{account_id}/{function_name}/start")
def api_start_indexer(
    account_id: str,
    function_name: str,
    payload: dict = Body(...),
    service=Depends(get_service),
):
    """Start an indexer.

    Body: ``{"code", "schema", "filter", "version", "mode": {"kind": ...}}``.
    """
    try:
        spec = IndexerFunctionSpec.from_dict(
            {**payload, "accountId": account_id, "functionName": function_name}
        )
        mode = mode_from_dict(payload.get("mode") or {"kind": "realtime"})
    except (KeyError, TypeError, ValueError) as e:
        return JSONResponse({"error": f"invalid request: {e}"}, status_code=400)
    service.start(spec, mode)
    return JSONResponse(service.status(spec.key), status_code=202)


@router.post("/{account_id}/{function_name}/resume")
def api_resume_indexer(
    account_id: str,
    function_name: str,
    payload: dict | None = Body(None),
    service=Depends(get_service),
):
    """Resume an interrupted indexer after its last persisted height.

    The body is optional: ``{"code", "schema", "filter", "version"}``
    resumes with a new definition; without it the registered or stored
    definition is used.
    """
    key = IndexerKey(account_id, function_name)
    spec = None
    if payload:
        try:
            spec = IndexerFunctionSpec.from_dict(
                {**payload, "accountId": account_id, "functionName": function_name}
            )
        except (KeyError, TypeError, ValueError) as e:
            return JSONResponse({"error": f"invalid request: {e}"}, status_code=400)
    try:
        service.resume(key, spec)
    except KeyError:
        return JSONResponse({"error": "no registered function for this indexer"}, status_code=404)
    return JSONResponse(service.status(key), status_code=202)


@router.post("/{account_id}/{function_name}/stop")
def api_stop_indexer(account_id: str, function_name: str, service=Depends(get_service)):
    """Request a cooperative stop."""
    key = IndexerKey(account_id, function_name)
    service.stop(key)
    return JSONResponse(service.status(key) or {"accountId": account_id, "functionName": function_name})


@router.delete("/{account_id}/{function_name}")
def api_delete_indexer(
    account_id: str,
    function_name: str,
    drop_namespace: bool = True,
    service=Depends(get_service),
):
    """Stop an indexer and remove its run state and namespace."""
    existed = service.delete(IndexerKey(account_id, function_name), drop_namespace=drop_namespace, timeout=5.0)
    if not existed:
        return JSONResponse({"error": "not found"}, status_code=404)
    return JSONResponse({"accountId": account_id, "functionName": function_name, "deleted": True})
