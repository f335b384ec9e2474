import json
import os
import sys
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest


def pytest_sessionstart(session):
    """
    在测试会话开始时，为 Python 解释器追加项目根目录到 sys.path。

    这样测试模块可以使用 `from app.main import create_app` 进行导入。
    """
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    if root not in sys.path:
        sys.path.insert(0, root)


class FakeClock:
    """可控时钟：返回固定时间（秒），通过 advance 推进。"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubUpstream:
    """
    模拟上游：记录每次请求，按 reply / status / body 返回。

    默认返回 {"choices": [{"message": {"content": reply}}]}。
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.reply = "hello"
        self.status = 200
        self.body: Optional[Any] = None
        self.error: Optional[Exception] = None
        self.key_status = 200
        self.key_body: Any = {"data": {"label": "test", "usage": 0}}
        # 路径 -> 重定向目标地址
        self.redirects: Dict[str, str] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        target = self.redirects.get(request.url.path)
        if target:
            return httpx.Response(308, headers={"Location": target})
        if request.url.path.endswith("/auth/key"):
            if isinstance(self.key_body, str):
                return httpx.Response(self.key_status, text=self.key_body)
            return httpx.Response(self.key_status, json=self.key_body)
        if isinstance(self.body, str):
            return httpx.Response(self.status, text=self.body)
        body = self.body if self.body is not None else {"choices": [{"message": {"content": self.reply}}]}
        return httpx.Response(self.status, json=body)

    def payload(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream() -> StubUpstream:
    return StubUpstream()


@pytest.fixture
def settings():
    from app.config import Settings

    return Settings(
        openrouter_api_key="sk-or-v1-abcdef123456",
        openrouter_url="https://upstream.test/api/v1/chat/completions",
        openrouter_key_url="https://upstream.test/api/v1/auth/key",
        model="test/model:free",
        app_url="https://relay.test",
    )


@pytest.fixture
def make_relay(settings, upstream, clock) -> Callable[..., Any]:
    from app.services.openrouter_client import OpenRouterClient
    from app.services.relay import RelayService

    def factory(**overrides):
        cfg = settings.model_copy(update=overrides) if overrides else settings
        client = OpenRouterClient(
            api_key=cfg.openrouter_api_key,
            completions_url=cfg.openrouter_url,
            key_url=cfg.openrouter_key_url,
            referer=cfg.app_url,
            title=cfg.app_title,
            transport=httpx.MockTransport(upstream.handler),
        )
        return RelayService(cfg, client=client, clock=clock)

    return factory


@pytest.fixture
def relay(make_relay):
    return make_relay()


@pytest.fixture
def client(settings, relay):
    from fastapi.testclient import TestClient
    from app.main import create_app

    with TestClient(create_app(settings, relay)) as c:
        yield c
