"""FastAPI application entry point."""

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from app.api import router as api_router
from app.core.config import get_settings
from app.core.session_registry import SessionRegistry

app = FastAPI(
    title="Reconstruction Engine",
    description="Strategy-driven long-document reconstruction over multiple LLM providers",
    version="0.1.0",
)

# Live sessions for abort and partial-output lookups
app.state.session_registry = SessionRegistry(ttl_seconds=get_settings().SESSION_TTL_SECONDS)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "ok"}, status_code=200)


# Include v1 API router
app.include_router(api_router, prefix="/v1", tags=["v1"])
