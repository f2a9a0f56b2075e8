"""
Shared router dependencies: services constructed at startup live on app.state.
"""

from fastapi import HTTPException, Request, status

from app.services.job_orchestrator import JobOrchestrator
from app.services.job_store import JobStore


def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return service


async def get_orchestrator(request: Request) -> JobOrchestrator:
    return _from_state(request, "orchestrator")


async def get_job_store(request: Request) -> JobStore:
    return _from_state(request, "job_store")
