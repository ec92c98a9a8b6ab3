from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storyrelay.api import chat as chat_api
from storyrelay.api import conversation as conversation_api
from storyrelay.api import memory as memory_api
from storyrelay.api import provider as provider_api
from storyrelay.api import turns as turns_api
from storyrelay.core.config import get_settings
from storyrelay.core.logging import setup_logging
from storyrelay.db.base import create_engine, create_sessionmaker, init_db
from storyrelay.services.chat_stream_service import ChatStreamService
from storyrelay.services.compaction_scheduler import CompactionScheduler
from storyrelay.services.compaction_service import CompactionService
from storyrelay.services.conversation_service import ConversationService
from storyrelay.services.memory_summarizer import MemorySummarizer
from storyrelay.services.prompt_builder import PromptBuilder
from storyrelay.services.provider_service import ProviderService
from storyrelay.services.turn_service import TurnService


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        yield
        await app.state.compaction_scheduler.shutdown()
        await engine.dispose()

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.provider_service = ProviderService(sessionmaker, settings)
    app.state.conversation_service = ConversationService(sessionmaker)
    app.state.turn_service = TurnService(sessionmaker)
    app.state.compaction_service = CompactionService(
        sessionmaker,
        app.state.provider_service,
        MemorySummarizer(
            max_plot_points=settings.max_plot_points,
            prompt_template=settings.summary_prompt_template,
            max_output_tokens=settings.summary_max_output_tokens,
        ),
    )
    app.state.compaction_scheduler = CompactionScheduler(
        app.state.compaction_service, max_concurrent=settings.max_concurrent_compactions
    )
    app.state.chat_stream_service = ChatStreamService(
        sessionmaker,
        app.state.provider_service,
        PromptBuilder(max_history=settings.history_max_turns),
        app.state.compaction_scheduler,
        settings,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"error": _validation_message(exc)})

    app.include_router(conversation_api.router)
    app.include_router(chat_api.router)
    app.include_router(memory_api.router)
    app.include_router(turns_api.router)
    app.include_router(provider_api.router)

    return app


def _validation_message(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(messages) or "Invalid request."


app = create_app()
