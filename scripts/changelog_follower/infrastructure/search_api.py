"""
Search origin — FastAPI application
-----------------------------------
The HTTP face of the typeahead index, mounted behind the edge router's
`search*` rule (which forwards the query string and nothing else).

Endpoints:
    GET /search?q=PREFIX&limit=N  — identities whose name starts with PREFIX
    GET /health                   — liveness check for the load balancer
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from changelog_follower.application.views import Autocompleter

log = logging.getLogger(__name__)


def create_app(autocompleter: Autocompleter) -> FastAPI:
    app = FastAPI(title="changelog-follower search", docs_url=None, redoc_url=None)

    @app.get("/search")
    def search(request: Request) -> JSONResponse:
        # Sync handler: FastAPI runs it in its threadpool, off the event loop
        response = autocompleter.handle(dict(request.query_params))
        return JSONResponse(response, headers={"Cache-Control": "public, max-age=60"})

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app


def run_search_server(autocompleter: Autocompleter, host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    log.info("Search origin listening on http://%s:%d/search", host, port)
    uvicorn.run(create_app(autocompleter), host=host, port=port, log_level="info", access_log=True)
