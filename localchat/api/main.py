from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException

from localchat.api import chat
from localchat.api.schema.chat import ErrorResponse
from localchat.core.config import settings
from localchat.core.exceptions import LocalChatError
from localchat.core.logger import get_logger
from localchat.llm.backend import ChatBackend
from localchat.storage.store import ChatStore
from localchat.streaming.pipeline import TokenPipeline
from localchat.streaming.registry import StreamRegistry

logger = get_logger(__name__)

NAME = settings["app"]["name"]
VERSION = settings["app"]["version"]


def error_body(message: str, error: str, **extra) -> dict:
    body = ErrorResponse(message=message, error=error).model_dump(by_alias=True)
    body.update({to_camel(key): value for key, value in extra.items()})
    return body


def register_exception_handlers(app: FastAPI):

    @app.exception_handler(LocalChatError)
    async def handle_localchat_error(request: Request, exc: LocalChatError):
        logger.warning(f"{request.method} {request.url.path} -> {exc.http_status} {exc.code}: {exc.message}")
        return JSONResponse(
            status_code=exc.http_status,
            content=error_body(exc.message, exc.code, **exc.extra),
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(str(exc.detail), "HTTP_ERROR"),
            headers=exc.headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content=error_body("Invalid request", "VALIDATION_ERROR", details=jsonable_encoder(exc.errors())),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content=error_body("Internal server error", "INTERNAL_ERROR"),
        )


def create_app(store: ChatStore = None, backend=None, registry: StreamRegistry = None) -> FastAPI:
    """Build the app; services not passed in are created from settings at startup."""

    # 서버 시작 전 이벤트
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 Starting server initialization...")
        chat_store = store if store is not None else ChatStore(
            settings["database"]["url"],
            echo=settings["database"].get("echo", False),
            default_title=settings["chat"]["default_title"],
        )
        stream_registry = registry if registry is not None else StreamRegistry()

        app.state.store = chat_store
        app.state.registry = stream_registry
        app.state.pipeline = TokenPipeline(
            chat_store,
            stream_registry,
            backend if backend is not None else ChatBackend.from_settings(),
            idle_timeout=settings["stream"].get("idle_timeout"),
            title_max_length=settings["chat"]["title_max_length"],
        )
        yield
        cancelled = stream_registry.cancel_all()
        logger.info(f"👋 Shutting down server... ({cancelled} live stream(s) cancelled)")
        if store is None:
            chat_store.close()

    app = FastAPI(
        title=NAME,
        version=VERSION,
        lifespan=lifespan
    )

    # CORS 미들웨어 설정
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings["app"]["cors_origins"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[chat.STREAM_HEADER, chat.MESSAGE_HEADER],
    )

    register_exception_handlers(app)

    # 라우터 등록
    app.include_router(chat.router)

    @app.get("/")
    async def health_check(request: Request):
        registry_state = getattr(request.app.state, "registry", None)
        return {
            "status": "ok",
            "server_name": NAME,
            "version": VERSION,
            "active_streams": len(registry_state) if registry_state is not None else 0,
            "timestamp": datetime.now().astimezone().isoformat()
        }

    return app


app = create_app()


def main() -> None:
    """서버 시작 함수"""
    print(f"🚀 {NAME} 시작 중...")
    print("💬 채팅 목록: GET /chats")
    print("📡 스트리밍 메시지: POST /chat/{id}/message")
    print("⏹️  스트림 중지: POST /chat/{id}/stop")

    uvicorn.run(
        "localchat.api.main:app",
        host=settings["app"]["host"],
        port=settings["app"]["port"],
        log_level=settings["logging"]["level"].lower(),
    )


if __name__ == "__main__":
    main()
