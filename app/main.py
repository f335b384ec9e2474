import asyncio
import contextlib
import math
import uuid
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, get_settings
from app.errors import RateLimitError, RelayError
from app.services.relay import RelayService
from app.types import ChatBody, ClearBody
from app.utils.logger import build_preview, get_content_log_config, log_json, setup_logger


logger = setup_logger()


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期：启动时拉起空闲会话清理任务，关闭时取消任务并释放上游连接池。
    """
    relay: RelayService = app.state.relay
    reaper = asyncio.create_task(relay.run_reaper())
    log_json(
        logger,
        20,
        "app.startup",
        model=relay.settings.model,
        configured=bool(relay.settings.openrouter_api_key),
        reaperInterval=relay.settings.reaper_interval_seconds,
    )
    try:
        yield
    finally:
        reaper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reaper
        await relay.aclose()
        log_json(logger, 20, "app.shutdown")


def create_app(settings: Optional[Settings] = None, relay: Optional[RelayService] = None) -> FastAPI:
    """
    构建 FastAPI 应用。

    输入：
        settings: 配置（为空时从环境变量读取）
        relay: 中继服务实例（为空时按 settings 构建；测试中可注入带模拟上游的实例）

    输出：
        FastAPI：已注册路由、CORS 与错误处理的应用，服务实例挂在 app.state.relay。
    """
    settings = settings or get_settings()
    app = FastAPI(title="Chat Relay Service", lifespan=lifespan)
    app.state.relay = relay or RelayService(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        # 所有业务错误统一转换为 {"error": message}
        headers = None
        if isinstance(exc, RateLimitError):
            log_json(logger, 30, "rate.limited", path=request.url.path, waitMs=exc.retry_after_ms)
            headers = {"Retry-After": str(math.ceil(exc.retry_after_ms / 1000))}
        else:
            log_json(logger, 30, "request.error", path=request.url.path, status=exc.status_code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        detail = errors[0].get("msg", "Invalid request body") if errors else "Invalid request body"
        log_json(logger, 30, "request.invalid", path=request.url.path, error=detail)
        return JSONResponse(status_code=400, content={"error": detail})

    @app.post("/api/chat")
    async def chat(body: ChatBody, request: Request):
        """
        聊天主入口。

        输入：
            body: ChatBody，{message, sessionId?}

        输出：
            JSON：{reply, model, timestamp}

        关键逻辑：
            - 校验、限流、上游错误均以 RelayError 抛出，由统一处理器转换；
            - 其他未预期异常记录堆栈并返回 500 {"error": ...}。
        """
        relay: RelayService = request.app.state.relay
        content_cfg = get_content_log_config()
        request_id = str(uuid.uuid4())
        session_id = body.sessionId
        log_json(logger, 20, "request.start", requestId=request_id, sessionId=session_id, path="/api/chat")
        if content_cfg["include_input"]:
            pv = build_preview(body.message, content_cfg["max_chars"], content_cfg["redact"])
            log_json(logger, 20, "request.input.preview", requestId=request_id, **pv)

        try:
            result = await relay.submit(session_id, body.message)
        except RelayError:
            raise
        except Exception as e:
            logger.exception("chat.error | requestId=%s", request_id)
            return JSONResponse(status_code=500, content={"error": str(e)})

        if content_cfg["include_output"] == "final":
            pv = build_preview(result.reply, content_cfg["max_chars"], content_cfg["redact"])
            log_json(logger, 20, "chat.reply.preview", requestId=request_id, **pv)
        log_json(logger, 20, "request.end", requestId=request_id, sessionId=session_id)
        return result.model_dump()

    @app.post("/api/clear")
    async def clear(request: Request, body: Optional[ClearBody] = None):
        relay: RelayService = request.app.state.relay
        relay.clear(body.sessionId if body else None)
        return {"message": "Conversation cleared"}

    @app.get("/api/health")
    async def health(request: Request):
        """
        健康检查接口。

        输出：
            JSON：{status, message, model, openrouterConfigured, apiKeyPrefix}
        """
        return request.app.state.relay.health()

    @app.get("/api/test-key")
    async def test_key(request: Request):
        relay: RelayService = request.app.state.relay
        return await relay.verify_key()

    return app


app = create_app()
