"""Core API endpoints for the marketplace assistant."""

from fastapi import APIRouter, Depends

from marketplace_assistant.api.dependencies import get_stage_monitor, get_vector_adapter
from marketplace_assistant.core.config import settings
from marketplace_assistant.domain.models.utils import utc_now
from marketplace_assistant.services.monitoring import StageMonitor
from marketplace_assistant.services.vector_adapter import VectorServiceAdapter

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with application status."""
    return {
        "message": "Marketplace Assistant API",
        "version": "0.1.0",
        "status": "running",
        "features": [
            "semantic_cache",
            "knowledge_store",
            "filter_intelligence",
            "streamed_tool_calls",
        ],
    }


@router.get("/health", operation_id="health")
async def health_check(vectors: VectorServiceAdapter | None = Depends(get_vector_adapter)):
    """Health check endpoint, including provider circuit states."""
    providers = vectors.health() if vectors is not None else {}
    open_circuits = [name for name, state in providers.items() if state["state"] == "open"]
    return {
        "status": "degraded" if open_circuits or vectors is None else "healthy",
        "storage_backend": settings.storage_backend,
        "providers": providers,
        "timestamp": utc_now().isoformat(),
    }


@router.get("/health/pipeline", operation_id="pipeline_health")
async def pipeline_health(monitor: StageMonitor | None = Depends(get_stage_monitor)):
    """Per-stage latency and success rates over the recent turns."""
    if monitor is None:
        return {"status": "unknown", "issues": [], "overall": None, "stages": {}}
    return monitor.health()
