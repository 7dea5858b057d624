import secrets
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from trending.config import PipelineSettings, load_settings
from trending.errors import PipelineError
from trending.logging_config import configure_logging, logger
from trending.scheduler import Orchestrator, build_orchestrator

app = FastAPI(title="Trending Pipeline API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class EnqueueRequest(BaseModel):
    article_ids: List[str] = Field(min_length=1)
    priority: int = 0


def get_settings(request: Request) -> PipelineSettings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        settings = load_settings()
        configure_logging(settings.log_level)
        request.app.state.settings = settings
    return settings


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = build_orchestrator(get_settings(request))
        request.app.state.orchestrator = orchestrator
    return orchestrator


def _authorized(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected:
        return True
    return provided is not None and secrets.compare_digest(provided, expected)


@app.get("/health")
async def health(request: Request):
    orchestrator = get_orchestrator(request)
    storage_ok = True
    try:
        await orchestrator.storage.ping()
    except PipelineError as e:
        logger.warning("Health check storage ping failed", error=str(e))
        storage_ok = False
    return {
        "status": "ok" if storage_ok else "degraded",
        "storage": storage_ok,
        "services": {
            "embeddings": orchestrator.queue.provider.is_configured(),
            "clustering": orchestrator.generator.provider.is_configured(),
        },
    }


@app.api_route("/run-ai-jobs", methods=["GET", "POST"])
async def run_ai_jobs(request: Request, secret: Optional[str] = None):
    settings = get_settings(request)
    if not _authorized(settings.ai_jobs_secret, secret):
        logger.warning("Rejected AI jobs trigger with bad secret")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    orchestrator = get_orchestrator(request)
    logger.info("Manual AI jobs trigger")
    report = await orchestrator.run_once()
    envelope = report.to_envelope()
    if not report.success:
        return JSONResponse(status_code=500, content=envelope)
    return envelope


@app.get("/clusters")
async def list_clusters(request: Request, limit: int = Query(10, ge=1, le=100)):
    orchestrator = get_orchestrator(request)
    try:
        clusters = await orchestrator.generator.get_active_clusters(limit)
    except PipelineError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {"clusters": [c.to_dict() for c in clusters]}


@app.get("/articles/{article_id}/similar")
async def similar_articles(request: Request, article_id: str):
    orchestrator = get_orchestrator(request)
    try:
        similar = await orchestrator.generator.find_similar_articles(article_id)
    except PipelineError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {
        "articleId": article_id,
        "similar": [
            {
                "articleId": s.article_id,
                "title": s.title,
                "feedName": s.feed_name,
                "feedId": s.feed_id,
                "similarityScore": round(s.similarity_score, 4),
                "publishedAt": s.published_at.isoformat() if s.published_at else None,
            }
            for s in similar
        ],
    }


@app.get("/queue/stats")
async def queue_stats(request: Request):
    orchestrator = get_orchestrator(request)
    try:
        queue = await orchestrator.queue.get_queue_stats()
    except PipelineError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {"queue": queue, "scheduler": orchestrator.stats.to_dict()}


@app.post("/queue/enqueue")
async def enqueue_articles(request: Request, req: EnqueueRequest):
    settings = get_settings(request)
    if not _authorized(settings.ai_jobs_secret, request.query_params.get("secret")):
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    orchestrator = get_orchestrator(request)
    try:
        queued = await orchestrator.queue.enqueue(req.article_ids, req.priority)
    except PipelineError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return {"queued": queued, "requested": len(req.article_ids)}
