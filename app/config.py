import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


load_dotenv()  # 加载 .env，确保 OPENROUTER_API_KEY、PORT 等可用

DEFAULT_MODEL = "nvidia/nemotron-nano-9b-v2:free"
DEFAULT_COMPLETIONS_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_KEY_URL = "https://openrouter.ai/api/v1/auth/key"
DEFAULT_APP_URL = "http://localhost:3000"


def resolve_app_url(vercel_url: Optional[str], app_url: Optional[str]) -> str:
    """
    计算对外可见的应用地址（作为 HTTP-Referer 发送给上游）。

    优先级：VERCEL_URL（自动加 https://） > APP_URL > 本地默认地址。
    """
    if vercel_url:
        return f"https://{vercel_url}"
    return app_url or DEFAULT_APP_URL


class Settings(BaseModel):
    """
    服务配置，集中管理密钥与上游参数。

    字段说明：
        openrouter_api_key: 上游 API 密钥（可空，为空时仍可启动，但调用会被上游拒绝）
        openrouter_url: 补全接口地址
        openrouter_key_url: 密钥校验接口地址
        model: 固定使用的模型标识
        app_url: 对外地址，用于 HTTP-Referer 头
        app_title: X-Title 头
        host/port: 监听地址
        system_prompt_name: 系统提示词模板名（见 app.services.prompts）
        allowed_origins: CORS 允许的来源列表

    以下为固定服务常量，仅在代码或测试中覆盖：
        min_request_interval_ms / max_history / temperature / max_tokens /
        session_ttl_seconds / reaper_interval_seconds
    """

    openrouter_api_key: Optional[str] = None
    openrouter_url: str = DEFAULT_COMPLETIONS_URL
    openrouter_key_url: str = DEFAULT_KEY_URL
    model: str = DEFAULT_MODEL
    app_url: str = DEFAULT_APP_URL
    app_title: str = "AI Chatbot"
    host: str = "0.0.0.0"
    port: int = 3000
    system_prompt_name: str = "default"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    min_request_interval_ms: int = 1000
    max_history: int = 21
    temperature: float = 0.7
    max_tokens: int = 500
    session_ttl_seconds: float = 3600
    reaper_interval_seconds: float = 3600

    @classmethod
    def from_env(cls) -> "Settings":
        """从进程环境变量构建配置；未设置的项使用默认值。"""
        return cls(
            openrouter_api_key=os.environ.get("OPENROUTER_API_KEY") or None,
            openrouter_url=os.environ.get("OPENROUTER_URL", DEFAULT_COMPLETIONS_URL),
            openrouter_key_url=os.environ.get("OPENROUTER_KEY_URL", DEFAULT_KEY_URL),
            model=os.environ.get("OPENROUTER_MODEL", DEFAULT_MODEL),
            app_url=resolve_app_url(os.environ.get("VERCEL_URL"), os.environ.get("APP_URL")),
            app_title=os.environ.get("APP_TITLE", "AI Chatbot"),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "3000")),
            system_prompt_name=os.environ.get("SYSTEM_PROMPT_NAME", "default"),
            allowed_origins=[o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "*").split(",") if o.strip()],
        )

    def api_key_prefix(self) -> str:
        # 仅暴露前 8 位，避免泄露完整密钥
        if not self.openrouter_api_key:
            return "Not set"
        return self.openrouter_api_key[:8] + "..."


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
