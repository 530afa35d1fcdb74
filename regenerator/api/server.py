from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from .cache import LookupCache
from .config import ScoringPolicy, get_runtime_config, site_domain_from_url
from .health import slug_decay_score
from .jobs import JobError, JobNotFound, JobQueue
from .links import AFFILIATE_DOMAINS
from .llm import LLMClient, LLMConfig
from .marketplace import MarketplaceClient
from .mesh import MeshError, MeshWorker, SemanticNode
from .models import (
    ConnectRequest,
    EnqueueRequest,
    ErrorResponse,
    HealthMetrics,
    ImageRequest,
    MappingRequest,
    OverridesRequest,
    PageRecord,
    Scores,
)
from .pipeline import PageProcessor, PipelineDeps
from .review import ReviewError, apply_mappings, parse_mapping_rows, publish_job, set_custom_image, update_overrides
from .search import SearchClient
from .wordpress import WordPressAuthError, WordPressClient, WordPressError

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logging.getLogger("regenerator").setLevel(os.getenv("REGEN_LOG_LEVEL", "INFO").strip().upper() or "INFO")
logger = logging.getLogger("regenerator")

SSE_PING_SECONDS = 15


class RegeneratorService:
    """Process-wide state behind the HTTP surface: store, mesh, page health, job queue."""

    def __init__(
        self,
        config: Dict[str, Any],
        *,
        llm: Any = None,
        store_factory: Callable[..., Any] = WordPressClient,
        marketplace: Optional[MarketplaceClient] = None,
        search: Optional[SearchClient] = None,
        policy: Optional[ScoringPolicy] = None,
    ):
        self.config = config
        self.policy = policy or ScoringPolicy.from_env()
        self.tag = config["affiliate_tag"]
        self._store_factory = store_factory
        self.store: Any = None
        self.site_url = ""
        self.pages: Dict[int, PageRecord] = {}
        self.health: Dict[int, Dict[str, Any]] = {}
        self.nodes: List[SemanticNode] = []
        self.mesh_worker = MeshWorker(self.policy)

        ttl = config["cache_ttl_seconds"]
        deps = PipelineDeps(
            llm=llm or LLMClient(LLMConfig.from_runtime_config(config)),
            marketplace=marketplace or MarketplaceClient(tag=self.tag, cache=LookupCache(ttl_seconds=ttl)),
            search=search or SearchClient(config["serper_api_key"], cache=LookupCache(ttl_seconds=ttl)),
            affiliate_tag=self.tag,
            site_domain=config["site_domain"],
            affiliate_domains=tuple(AFFILIATE_DOMAINS) + tuple(config["affiliate_domains"]),
            mesh_size=config["mesh_size"],
        )
        self.processor = PageProcessor(None, deps, policy=self.policy)
        self.queue = JobQueue(
            self.processor,
            concurrency=config["concurrency"],
            timeout_seconds=config["job_timeout_seconds"],
        )

    def require_store(self) -> Any:
        if self.store is None:
            raise HTTPException(status_code=409, detail="Not connected to a content store.")
        return self.store

    def _record_health(self, page: PageRecord, response: Dict[str, Any]) -> Dict[str, Any]:
        decay, reasons = slug_decay_score(page.slug, page.modified)
        entry = {
            "metrics": response["metrics"],
            "scores": response["scores"],
            "decay_score": decay,
            "decay_reasons": reasons,
        }
        self.health[page.id] = entry
        return entry

    async def connect(self, request: ConnectRequest) -> Dict[str, Any]:
        url = request.url or self.config["wp_url"]
        username = request.username or self.config["wp_username"]
        app_password = request.app_password or self.config["wp_app_password"]
        store = self._store_factory(
            url,
            username,
            app_password,
            timeout_seconds=self.config["wp_timeout_seconds"],
        )
        await asyncio.to_thread(store.verify_connection)
        pages = await asyncio.to_thread(store.list_pages)
        nodes = await asyncio.to_thread(self.mesh_worker.build_mesh, pages)

        self.store = store
        self.site_url = url
        self.pages = {page.id: page for page in pages}
        self.nodes = nodes
        self.processor.store = store
        self.processor.site_url = url
        self.processor.nodes = nodes
        if not self.processor.deps.site_domain:
            self.processor.deps.site_domain = site_domain_from_url(url)

        self.health = {}
        for page in pages:
            self.queue.register(page)
            response = await asyncio.to_thread(self.mesh_worker.analyze_health, page, url)
            self._record_health(page, response)
        logger.info("regenerator.connected site=%s pages=%s", url, len(pages))
        return {"ok": True, "site": url, "pages": len(pages)}

    async def scan(self, page_id: int) -> Dict[str, Any]:
        store = self.require_store()
        page = await asyncio.to_thread(store.fetch_full_content, page_id)
        response = await asyncio.to_thread(self.mesh_worker.analyze_health, page, self.site_url)
        self.pages[page.id] = page.model_copy(update={"html": ""})
        self.queue.register(page)
        return {"page_id": page.id, **_dump_health(self._record_health(page, response))}

    def list_pages(self) -> List[Dict[str, Any]]:
        rows = []
        for page in self.pages.values():
            entry = self.health.get(page.id) or {}
            scores: Scores = entry.get("scores") or Scores()
            job = self.queue.jobs.get(page.id)
            rows.append(
                {
                    "id": page.id,
                    "title": page.title,
                    "slug": page.slug,
                    "link": page.link,
                    "modified": page.modified.isoformat() if page.modified else None,
                    "status": job.status if job else "idle",
                    **_dump_health(entry),
                    "opportunity": scores.opportunity,
                }
            )
        rows.sort(key=lambda row: (row["opportunity"], row.get("decay_score") or 0), reverse=True)
        return rows

    async def shutdown(self) -> None:
        await self.queue.stop()
        self.mesh_worker.stop()


def _dump_health(entry: Dict[str, Any]) -> Dict[str, Any]:
    metrics: Optional[HealthMetrics] = entry.get("metrics")
    scores: Optional[Scores] = entry.get("scores")
    return {
        "metrics": metrics.model_dump() if metrics else None,
        "scores": scores.model_dump() if scores else None,
        "decay_score": entry.get("decay_score", 0),
        "decay_reasons": entry.get("decay_reasons", []),
    }


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    payload = ErrorResponse(error=error, details={"message": message})
    return JSONResponse(status_code=status_code, content=payload.model_dump())


def create_app(service: Optional[RegeneratorService] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is None:
            app.state.service = RegeneratorService(get_runtime_config())
        else:
            app.state.service = service
        app.state.service.mesh_worker.start()
        yield
        await app.state.service.shutdown()

    app = FastAPI(title="Content Regenerator", lifespan=lifespan)

    cors_origins = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "").split(",") if origin.strip()]
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(error="validation_error", details={"errors": jsonable_encoder(exc.errors())}).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:
        payload = ErrorResponse(error=str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=payload.model_dump())

    @app.exception_handler(WordPressAuthError)
    async def wordpress_auth_handler(_: Request, exc: WordPressAuthError) -> JSONResponse:
        logger.warning("regenerator.wordpress_unauthorized error=%s", exc)
        return _error(401, "wordpress_unauthorized", str(exc))

    @app.exception_handler(WordPressError)
    async def wordpress_error_handler(_: Request, exc: WordPressError) -> JSONResponse:
        logger.warning("regenerator.wordpress_failed error=%s", exc)
        return _error(502, "wordpress_failed", str(exc))

    @app.exception_handler(JobNotFound)
    async def job_not_found_handler(_: Request, exc: JobNotFound) -> JSONResponse:
        return _error(404, "job_not_found", str(exc))

    @app.exception_handler(JobError)
    async def job_error_handler(_: Request, exc: JobError) -> JSONResponse:
        return _error(409, "job_conflict", str(exc))

    @app.exception_handler(ReviewError)
    async def review_error_handler(_: Request, exc: ReviewError) -> JSONResponse:
        return _error(409, "review_conflict", str(exc))

    @app.exception_handler(MeshError)
    async def mesh_error_handler(_: Request, exc: MeshError) -> JSONResponse:
        logger.warning("regenerator.mesh_failed error=%s", exc)
        return _error(500, "mesh_failed", str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_: Request, exc: Exception) -> JSONResponse:
        logger.exception("regenerator.unhandled_error")
        payload = ErrorResponse(error="internal_error")
        return JSONResponse(status_code=500, content=payload.model_dump())

    def current(request: Request) -> RegeneratorService:
        return request.app.state.service

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        svc = current(request)
        llm_ready = bool(svc.config.get("llm_api_key"))
        store_ready = bool(svc.config.get("wp_url")) or svc.store is not None
        ok = llm_ready and store_ready
        payload = {
            "ok": ok,
            "llm_ready": llm_ready,
            "store_ready": store_ready,
            "connected": svc.store is not None,
        }
        return JSONResponse(status_code=200 if ok else 503, content=payload)

    @app.post("/connect")
    async def connect(request: Request) -> JSONResponse:
        try:
            data = await request.json()
        except ValueError:
            data = {}
        payload = ConnectRequest(**(data or {}))
        return JSONResponse(status_code=200, content=await current(request).connect(payload))

    @app.get("/pages")
    async def pages(request: Request) -> JSONResponse:
        return JSONResponse(status_code=200, content={"pages": current(request).list_pages()})

    @app.post("/pages/{page_id}/scan")
    async def scan(page_id: int, request: Request) -> JSONResponse:
        return JSONResponse(status_code=200, content=await current(request).scan(page_id))

    @app.post("/jobs")
    async def enqueue(payload: EnqueueRequest, request: Request) -> JSONResponse:
        svc = current(request)
        svc.require_store()
        queued = svc.queue.enqueue(payload.page_ids)
        return JSONResponse(
            status_code=202,
            content={"queued": [job.page_id for job in queued]},
        )

    @app.get("/jobs")
    async def list_jobs(request: Request) -> JSONResponse:
        jobs = current(request).queue.list_jobs()
        return JSONResponse(status_code=200, content={"jobs": [job.model_dump(mode="json") for job in jobs]})

    @app.get("/jobs/events")
    async def job_events(request: Request) -> EventSourceResponse:
        """SSE stream of job state changes."""
        queue = current(request).queue
        subscriber = queue.subscribe()

        async def event_generator():
            try:
                while True:
                    event = await subscriber.get()
                    yield {"event": "job", "data": json.dumps(event)}
            finally:
                queue.unsubscribe(subscriber)

        return EventSourceResponse(event_generator(), ping=SSE_PING_SECONDS)

    @app.get("/jobs/{page_id}")
    async def get_job(page_id: int, request: Request) -> JSONResponse:
        job = current(request).queue.get(page_id)
        return JSONResponse(status_code=200, content=job.model_dump(mode="json"))

    @app.put("/jobs/{page_id}/overrides")
    async def put_overrides(page_id: int, payload: OverridesRequest, request: Request) -> JSONResponse:
        svc = current(request)
        job = update_overrides(svc.queue.get(page_id), payload.overrides, svc.tag)
        stored = svc.queue.store(job)
        return JSONResponse(status_code=200, content=stored.model_dump(mode="json"))

    @app.put("/jobs/{page_id}/image")
    async def put_image(page_id: int, payload: ImageRequest, request: Request) -> JSONResponse:
        svc = current(request)
        job = set_custom_image(svc.queue.get(page_id), payload.image_url, svc.tag)
        stored = svc.queue.store(job)
        return JSONResponse(status_code=200, content=stored.model_dump(mode="json"))

    @app.post("/mappings")
    async def mappings(payload: MappingRequest, request: Request) -> JSONResponse:
        svc = current(request)
        rows = parse_mapping_rows(payload.csv_text)
        changed, matched = apply_mappings(svc.queue.list_jobs(), rows, svc.tag)
        for job in changed:
            svc.queue.store(job)
        return JSONResponse(
            status_code=200,
            content={"rows": len(rows), "matched": matched, "page_ids": [job.page_id for job in changed]},
        )

    @app.post("/jobs/{page_id}/publish")
    async def publish(page_id: int, request: Request) -> JSONResponse:
        svc = current(request)
        store = svc.require_store()
        job = svc.queue.get(page_id)
        html = await asyncio.to_thread(publish_job, job, store, svc.tag)
        published = svc.queue.transition(page_id, "published", draft_html=html)
        return JSONResponse(status_code=200, content=published.model_dump(mode="json"))

    @app.post("/stop")
    async def stop(request: Request) -> JSONResponse:
        drained = await current(request).queue.stop()
        return JSONResponse(status_code=200, content={"ok": True, "drained": drained})

    return app


app = create_app()
