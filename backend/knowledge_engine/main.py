from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api.routes import knowledge
from .core.config import get_settings
from .logging_utils import setup_logging
from .middleware.logging_middleware import RequestLoggingMiddleware
from .services.retrieval_factory import get_hybrid_retriever


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Only shut down a retriever that was actually built.
    if get_hybrid_retriever.cache_info().currsize:
        get_hybrid_retriever().shutdown()
        get_hybrid_retriever.cache_clear()


def create_app(configure_logging: bool = True) -> FastAPI:
    settings = get_settings()
    if configure_logging:
        setup_logging(settings)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(knowledge.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
