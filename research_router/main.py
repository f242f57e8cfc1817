import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import CONFIG_PATH, AppSettings, load_settings, save_settings
from .pipeline import ResearchPipeline
from .router import InferenceRouter
from .schemas import CrawlRequest, LLMRequest, LLMResponse, ResearchRequest
from .sources import SourceProvider, SourceProviderError, TavilySourceProvider


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_router(request: Request) -> InferenceRouter:
    return request.app.state.router


def get_source_provider(request: Request) -> SourceProvider:
    return request.app.state.source_provider


def get_pipeline(request: Request) -> ResearchPipeline:
    return request.app.state.pipeline


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    new_settings = AppSettings(**{**settings.model_dump(), **body})
    save_settings(new_settings, config_path=config_path)
    app = request.app
    app.state.settings = new_settings
    if app.state.owns_router:
        # Requests may still be in flight on this router, so its client stays open.
        app.state.router.reconfigure(new_settings)
    if isinstance(app.state.source_provider, TavilySourceProvider):
        app.state.source_provider.api_key = new_settings.tavily_api_key
    app.state.pipeline = ResearchPipeline(app.state.router, app.state.source_provider, new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/models")
async def list_models(llm_router: InferenceRouter = Depends(get_router)):
    return {"models": llm_router.registry.catalog(llm_router.credentials)}


@router.post("/api/llm", response_model=LLMResponse)
async def route_llm(payload: LLMRequest, llm_router: InferenceRouter = Depends(get_router)):
    if not payload.messages:
        raise HTTPException(status_code=400, detail="messages must include at least one entry")
    result = await llm_router.execute(payload)
    if not result.success:
        return JSONResponse(status_code=502, content=result.model_dump(mode="json"))
    return result


@router.post("/api/research")
async def run_research(payload: ResearchRequest, pipeline: ResearchPipeline = Depends(get_pipeline)):
    if not payload.query.strip():
        raise HTTPException(status_code=400, detail="Query required.")
    result = await pipeline.run(payload)
    status = 200 if result.success else 502
    return JSONResponse(status_code=status, content=result.model_dump(mode="json", exclude_none=True))


@router.post("/api/crawl")
async def crawl(
    payload: CrawlRequest,
    settings: AppSettings = Depends(get_settings),
    source_provider: SourceProvider = Depends(get_source_provider),
):
    try:
        pages = await asyncio.wait_for(
            source_provider.crawl(payload.url, payload.max_depth, payload.max_pages),
            timeout=settings.scrape_timeout_s * 4,
        )
    except asyncio.TimeoutError:
        raise HTTPException(status_code=504, detail="Crawl timed out.")
    except SourceProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"pages": [page.model_dump() for page in pages]}


def create_app(
    settings: AppSettings,
    *,
    llm_router: Optional[InferenceRouter] = None,
    source_provider: Optional[SourceProvider] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await app.state.router.close()
            closer = getattr(app.state.source_provider, "close", None)
            if callable(closer):
                await closer()

    app = FastAPI(title="Research Router", lifespan=lifespan)
    app.state.settings = settings
    app.state.owns_router = llm_router is None
    app.state.router = llm_router or InferenceRouter.from_settings(settings)
    app.state.source_provider = source_provider or TavilySourceProvider(settings.tavily_api_key)
    app.state.pipeline = ResearchPipeline(app.state.router, app.state.source_provider, settings)
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


def create_default_app() -> FastAPI:
    return create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = load_settings()
    reload_enabled = os.getenv("RESEARCH_ROUTER_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "research_router.main:create_default_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
