import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.src.core.config import ChatConfig, settings
from backend.src.core.errors import AppError
from backend.src.core.logging import setup_logging
from backend.src.services.chat.container import ChatServices, build_chat_services

# --- API Route Imports ---
from backend.src.api.routes import chat

logger = logging.getLogger(__name__)


def create_app(services: Optional[ChatServices] = None) -> FastAPI:
    """
    Build the API. Without `services` the chat core is wired from the process
    settings at startup, and a bad provider configuration stops the boot.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL)
        if services is None:
            from backend.src.db.session import AsyncSessionLocal, engine
            from backend.src.init_db import init_models

            await init_models(engine)
            app.state.chat_services = build_chat_services(ChatConfig.from_settings(settings), AsyncSessionLocal)
            logger.info("Chat core ready (provider=%s)", settings.AI_PROVIDER)
            yield
            await engine.dispose()
        else:
            app.state.chat_services = services
            yield

    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description="Conversational assistant for patient records",
        lifespan=lifespan,
    )

    # CORS Setup
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Idempotent-Replayed"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # Health Check Route
    @app.get("/")
    async def root():
        return {"message": f"Welcome to {settings.PROJECT_NAME}", "status": "active"}

    # API Router Includes
    app.include_router(chat.router, prefix=settings.API_V1_STR, tags=["Chat"])
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("backend.src.main:app", host="0.0.0.0", port=8000, reload=True)
