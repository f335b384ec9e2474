import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from app.config import Settings
from app.errors import UpstreamError, ValidationError
from app.services.openrouter_client import OpenRouterClient
from app.services.prompts import get_system_prompt
from app.services.rate_limiter import RateLimiter
from app.services.session_store import SessionStore
from app.types import DEFAULT_SESSION_ID, ChatReply
from app.utils.logger import LOGGER_NAME, log_json


logger = logging.getLogger(LOGGER_NAME)


def iso_timestamp(ts: float) -> str:
    # 与 JS Date.toISOString 一致：UTC、毫秒精度、Z 结尾
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RelayService:
    """
    聊天中继服务：持有会话记录、限流状态与上游客户端。

    方法：
        submit(session_id, message): 处理一轮对话，返回 ChatReply
        clear(session_id): 清除会话记录与限流状态
        health(): 返回静态健康信息
        verify_key(): 校验上游密钥
        reap(now?): 清理空闲会话，返回被删除的会话ID
        run_reaper(): 后台周期清理任务（由应用生命周期启动与取消）

    关键逻辑：
        - 单事件循环调度，仅在上游调用处挂起；不同会话互不干扰
        - 同一会话并发请求不做互斥（两次请求可能同时通过限流，回复追加顺序不保证）
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[OpenRouterClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.clock = clock
        self.store = SessionStore(get_system_prompt(settings.system_prompt_name), settings.max_history)
        self.limiter = RateLimiter(settings.min_request_interval_ms, clock=clock)
        self.client = client or OpenRouterClient(
            api_key=settings.openrouter_api_key,
            completions_url=settings.openrouter_url,
            key_url=settings.openrouter_key_url,
            referer=settings.app_url,
            title=settings.app_title,
        )

    async def submit(self, session_id: Optional[str], message: Optional[str]) -> ChatReply:
        """
        处理一轮对话。

        输入：
            session_id: 会话ID（为空时使用 "default"）
            message: 用户输入文本（必填）

        输出：
            ChatReply：{reply, model, timestamp}

        关键逻辑：
            - 先校验 message，再限流；限流失败不修改任何状态；
            - 限流时间戳在调用上游之前写入，上游缓慢或失败都会占用该名额；
            - 上游失败时不回滚已追加的 user 消息，也不追加 assistant 消息。
        """
        sid = DEFAULT_SESSION_ID if session_id is None else session_id
        if not message:
            raise ValidationError("Message is required")

        self.limiter.acquire(sid)
        messages = self.store.append(sid, "user", message)

        log_json(logger, logging.INFO, "upstream.request", sessionId=sid, model=self.settings.model, messages=len(messages))
        try:
            reply = await self.client.complete(
                messages,
                model=self.settings.model,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
            )
        except UpstreamError as e:
            log_json(logger, logging.ERROR, "upstream.error", sessionId=sid, status=e.upstream_status, error=e.body)
            raise

        self.store.append(sid, "assistant", reply)
        return ChatReply(reply=reply, model=self.settings.model, timestamp=iso_timestamp(self.clock()))

    def clear(self, session_id: Optional[str]) -> None:
        sid = DEFAULT_SESSION_ID if session_id is None else session_id
        self.store.delete(sid)
        self.limiter.remove(sid)
        log_json(logger, logging.INFO, "session.cleared", sessionId=sid)

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "message": "Chatbot is running",
            "model": self.settings.model,
            "openrouterConfigured": bool(self.settings.openrouter_api_key),
            "apiKeyPrefix": self.settings.api_key_prefix(),
        }

    async def verify_key(self) -> Dict[str, Any]:
        result = await self.client.check_key()
        log_json(logger, logging.INFO, "keycheck.result", valid=result["valid"], status=result["status"])
        return result

    def reap(self, now: Optional[float] = None) -> List[str]:
        """
        清理空闲会话：最近一次请求早于 now - session_ttl_seconds 的会话，
        同时删除其限流记录与对话记录。
        """
        now = self.clock() if now is None else now
        cutoff = now - self.settings.session_ttl_seconds
        expired = self.limiter.idle_since(cutoff)
        for sid in expired:
            self.limiter.remove(sid)
        self.store.delete_many(expired)
        log_json(logger, logging.INFO, "reaper.sweep", removed=len(expired), remaining=len(self.limiter.last_seen))
        return expired

    async def run_reaper(self, interval: Optional[float] = None) -> None:
        interval = self.settings.reaper_interval_seconds if interval is None else interval
        while True:
            await asyncio.sleep(interval)
            self.reap()

    async def aclose(self) -> None:
        await self.client.aclose()
