from typing import Optional
from pydantic import BaseModel


DEFAULT_SESSION_ID = "default"


class ChatBody(BaseModel):
    """
    POST /api/chat 请求体模型。

    字段说明：
        message: 用户输入文本（必填；缺失时由服务层返回 400，而非 422）
        sessionId: 会话ID（选填，默认 "default"）
    """

    message: Optional[str] = None
    sessionId: Optional[str] = DEFAULT_SESSION_ID


class ClearBody(BaseModel):
    """POST /api/clear 请求体模型。"""

    sessionId: Optional[str] = DEFAULT_SESSION_ID


class ChatReply(BaseModel):
    """POST /api/chat 成功响应。timestamp 为 ISO8601（UTC，毫秒精度）。"""

    reply: str
    model: str
    timestamp: str
