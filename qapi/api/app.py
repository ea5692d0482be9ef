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

"""FastAPI application factory for the QAPI HTTP surface."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from qapi.runtime.errors import (
    CoordinatorError,
    QAPIError,
    SchemaError,
    SchemaMalformedError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)


def error_body(error: Exception) -> dict:
    """JSON body describing *error*."""
    body = {"error": str(error), "errorType": type(error).__name__}
    if isinstance(error, SchemaMalformedError):
        body["fragment"] = error.fragment
        body["line"] = error.line
        body["column"] = error.column
    return body


def _status_for(error: QAPIError) -> int:
    if isinstance(error, SchemaError):
        return 422
    if isinstance(error, CoordinatorError):
        return 409
    if isinstance(error, StorageUnavailableError):
        return 503
    return 400


def create_app(config_path: str | None = None) -> FastAPI:
    """Build and return the configured FastAPI application.

    Args:
        config_path: Optional path to a QAPI config file.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Store config path for dependency injection
        app.state.config_path = config_path
        yield

    app = FastAPI(
        title="QAPI",
        description="Indexer execution engine: control, debug replay and type generation",
        lifespan=lifespan,
    )
    app.state.config_path = config_path

    @app.exception_handler(QAPIError)
    async def _qapi_error(request: Request, exc: QAPIError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(error_body(exc), status_code=status)

    from .routes import register_routes

    register_routes(app)

    return app
