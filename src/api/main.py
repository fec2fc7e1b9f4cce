"""
FastAPI application for the hybrid retrieval API.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .deps import build_retriever
from .routes import router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the retriever on startup; stop its executor on shutdown."""
    retriever = build_retriever()
    app.state.retriever = retriever
    yield
    app.state.retriever = None
    retriever.pipeline.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Hybrid RAG API",
        description="Hybrid vector + BM25 retrieval with token-budgeted context assembly",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    app.include_router(router)
    return app


app = create_app()
