"""FastAPI application serving stored migration reports."""

import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import runs

app = FastAPI(
    title="Legacy Migration Reports API",
    description="Read-only access to run summaries, integrity reports and rejected records",
    version="0.1.0",
)

# Comma separated, e.g. "http://localhost:3000,https://ops.example.com"
cors_origins = [
    origin.strip()
    for origin in os.environ.get("MIGRATION_CORS_ORIGINS", "").split(",")
    if origin.strip()
]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

app.include_router(runs.router, prefix="/api/runs", tags=["runs"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
