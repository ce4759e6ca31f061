import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from agents.game_agent.service import GameAgentService

logger = logging.getLogger("agent_runner.game_router")


class RunRequest(BaseModel):
    """Payload for a manual game run."""
    payload: Optional[Dict[str, Any]] = None


def create_game_router(service: GameAgentService, job_secret: str) -> APIRouter:
    """HTTP control surface for the game agent; runs go through the coordinator."""
    router = APIRouter(tags=["game-agent"])

    def _extract_secret(
        request: Request,
        req: Optional[RunRequest] = None,
        allow_body: bool = False,
    ) -> tuple[str, str]:
        header_secret = request.headers.get("x-job-secret", "").strip()
        if header_secret:
            return header_secret, "header"

        query_secret = request.query_params.get("secret", "").strip()
        if query_secret:
            return query_secret, "query"

        if allow_body and req is not None:
            body_secret = str((req.payload or {}).get("secret", "")).strip()
            if body_secret:
                return body_secret, "body"

        return "", "missing"

    def ensure_auth(request: Request, req: Optional[RunRequest] = None) -> None:
        if not job_secret:
            return
        provided, source = _extract_secret(request, req, allow_body=req is not None)
        if provided != job_secret:
            logger.warning(
                "Unauthorized on %s (source=%s, client=%s)",
                request.url.path,
                source,
                request.client.host if request.client else "unknown",
            )
            raise HTTPException(status_code=401, detail="Unauthorized")
        logger.debug("Auth OK on %s (source=%s)", request.url.path, source)

    @router.post("/run/{job_name}")
    async def run_job(job_name: str, request: Request, req: Optional[RunRequest] = None):
        """Trigger a run now; dropped if another run is in progress."""
        ensure_auth(request, req or RunRequest())
        runner = service.list_jobs().get(job_name)
        if runner is None:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")
        return await runner(trigger="http")

    @router.get("/jobs")
    def list_jobs(request: Request):
        ensure_auth(request)
        return {"jobs": sorted(service.list_jobs().keys())}

    @router.get("/status")
    def status(request: Request):
        ensure_auth(request)
        return service.get_status()

    @router.get("/events")
    def events(request: Request, limit: int = 200, day: str = ""):
        """Persisted run events (jsonl), newest last."""
        ensure_auth(request)
        return service.get_runtime_events(limit=limit, day=day)

    @router.get("/health")
    def health():
        return {"ok": True, "jobs": sorted(service.list_jobs().keys()), "has_job_secret": bool(job_secret)}

    return router
