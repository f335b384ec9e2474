import json
from typing import Any, Dict, List, Optional

import httpx

from app.errors import TransportError, UpstreamError


class OpenRouterClient:
    """
    OpenRouter 客户端封装，负责补全请求与密钥校验。

    方法：
        complete(messages, model, temperature, max_tokens): 发起一次补全，返回回复文本
        check_key(): 调用密钥校验接口，返回 {valid, status, data}
        aclose(): 关闭底层连接池

    关键逻辑：
        - 单次请求，不重试、不流式；不设置超时（timeout=None），等待上游返回或失败
        - 跟随上游重定向（follow_redirects=True），重定向后的最终响应才参与判定
        - 非 2xx 直接抛出 UpstreamError，携带上游状态码与原始响应文本
        - 可通过 transport 注入 httpx.MockTransport 以便测试
    """

    def __init__(
        self,
        api_key: Optional[str],
        completions_url: str,
        key_url: str,
        referer: str,
        title: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.completions_url = completions_url
        self.key_url = key_url
        self.referer = referer
        self.title = title
        self._client = httpx.AsyncClient(timeout=None, follow_redirects=True, transport=transport)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key or ''}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.title,
        }

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str:
        """
        发起补全请求。

        输入：
            messages: 完整对话记录（含 system 消息）
            model: 模型标识
            temperature: 采样温度
            max_tokens: 最大输出 token 数

        输出：
            str: choices[0].message.content

        异常：
            UpstreamError: 上游非 2xx，或返回体缺少补全文本
            TransportError: 网络异常或返回体不是合法 JSON
        """
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        try:
            resp = await self._client.post(self.completions_url, headers=self._headers(), json=payload)
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e

        text = resp.text
        if not resp.is_success:
            raise UpstreamError(text or f"Upstream returned {resp.status_code}", resp.status_code, text)

        try:
            data = json.loads(text)
        except ValueError as e:
            raise TransportError(f"Invalid JSON from upstream: {e}") from e

        reply = extract_reply(data)
        if not reply:
            raise UpstreamError("No response from model.", resp.status_code, text)
        return reply

    async def check_key(self) -> Dict[str, Any]:
        try:
            resp = await self._client.get(self.key_url, headers={"Authorization": f"Bearer {self.api_key or ''}"})
            data = resp.json()
        except httpx.HTTPError as e:
            raise TransportError(str(e) or e.__class__.__name__) from e
        except ValueError as e:
            raise TransportError(f"Invalid JSON from key endpoint: {e}") from e
        return {"valid": resp.is_success, "status": resp.status_code, "data": data}

    async def aclose(self) -> None:
        await self._client.aclose()


def extract_reply(data: Any) -> Optional[str]:
    """
    从上游返回体中容错提取 choices[0].message.content。

    任一层缺失或类型不符时返回 None。
    """
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None
