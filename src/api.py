"""
Health API - Liveness, readiness and status endpoints.

Serves a small FastAPI app alongside the controller so the operator can be
probed by the kubelet and inspected by syncctl.
"""

import logging
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from controller import Controller

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Response model for health probes."""

    status: str = Field(..., description="Probe status", examples=["ok"])


class StatsResponse(BaseModel):
    """Response model for reconcile counters."""

    ready: bool
    primary_kind: str
    namespace: Optional[str] = None
    counters: Dict[str, int]


class HealthAPI:
    """
    HTTP server exposing health probes and reconcile statistics.
    """

    def __init__(self, controller: Controller, host: str = "0.0.0.0", port: int = 8081):
        self.controller = controller
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None
        self.app = FastAPI(
            title="Replica Sync Operator",
            description="Health and status endpoints for the replica sync operator",
            version="1.0.0",
        )
        self._setup_routes()

    def _setup_routes(self) -> None:
        """
        Set up the FastAPI routes.

        - Liveness: GET /healthz
        - Readiness: GET /readyz
        - Counters: GET /api/v1/stats
        """

        @self.app.get("/healthz", response_model=HealthResponse)
        async def healthz():
            """Liveness probe."""
            return HealthResponse(status="ok")

        @self.app.get("/readyz", response_model=HealthResponse)
        async def readyz():
            """Readiness probe; ready once primaries have been listed."""
            if not self.controller.ready:
                raise HTTPException(status_code=503, detail="Controller not ready")
            return HealthResponse(status="ok")

        @self.app.get("/api/v1/stats", response_model=StatsResponse)
        async def stats():
            """Reconcile outcome counters and queue depth."""
            return StatsResponse(
                ready=self.controller.ready,
                primary_kind=self.controller.primary_kind.kind,
                namespace=self.controller.namespace,
                counters=self.controller.get_stats(),
            )

    async def start(self, log_level: str = "info") -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=log_level.lower(),
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting health API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping health API")
        if self.server:
            self.server.should_exit = True
