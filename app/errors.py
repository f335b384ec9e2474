from typing import Any, Dict, Optional


class RelayError(Exception):
    """
    中继服务错误基类。

    说明：
        - 所有错误在请求边界统一转换为 JSON：{"error": message}
        - status_code 为返回给调用方的 HTTP 状态码
    """

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(RelayError):
    """请求缺少必填字段（如 message）。"""

    status_code = 400


class RateLimitError(RelayError):
    """
    同一会话请求过于频繁。

    retry_after_ms: 距离下次可请求的剩余毫秒数。
    """

    status_code = 429

    def __init__(self, message: str, retry_after_ms: int):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class UpstreamError(RelayError):
    """
    上游返回非成功状态，或返回体缺少补全文本。

    upstream_status: 上游 HTTP 状态码（若有）
    body: 上游原始响应文本或错误描述
    """

    def __init__(self, message: str, upstream_status: Optional[int] = None, body: Optional[str] = None):
        # 上游非 2xx 时透传其状态码，其余情况统一 500
        status = upstream_status if upstream_status is not None and upstream_status >= 400 else 500
        super().__init__(message, status)
        self.upstream_status = upstream_status
        self.body = body if body is not None else message


class TransportError(UpstreamError):
    """网络异常或响应解析失败，统一返回 500。"""

    def __init__(self, message: str):
        super().__init__(message)
