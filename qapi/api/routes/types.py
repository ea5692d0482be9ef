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

"""Schema type generation endpoint for editor tooling."""

from __future__ import annotations

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from qapi.typegen import generate_type_descriptor

router = APIRouter(prefix="/api")


@router.post("/types")
def api_types(payload: dict = Body(...)):
    """Return the type descriptor and rendered stub for a schema.

    Body: ``{"schema": "<CREATE TABLE ...>"}``. Malformed schemas are
    reported as 422 by the app's error handler.
    """
    schema = payload.get("schema")
    if not isinstance(schema, str) or not schema.strip():
        return JSONResponse({"error": "schema is required"}, status_code=400)
    descriptor = generate_type_descriptor(schema)
    return JSONResponse({**descriptor.to_dict(), "stub": descriptor.render()})
