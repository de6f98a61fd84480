"""
Health check endpoint.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from app.dependencies import get_orchestrator
from samlflow.loginflow import AuthOrchestrator

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Liveness plus a summary of what the login flow has loaded."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "providers": len(orchestrator.providers),
        "exclusion_rules": len(orchestrator.exclusions),
        "state_backend": type(orchestrator.store.backend).__name__,
    }
