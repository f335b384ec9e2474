import time
from typing import Callable, Dict, List, Optional

from app.errors import RateLimitError


class RateLimiter:
    """
    按会话的最小请求间隔限流器。

    说明：
        - 每个会话仅记录最近一次被接受请求的时间戳（秒）
        - 距上次被接受的请求不足 min_interval_ms 时拒绝，且不更新时间戳
        - 时间来源可注入（clock），便于测试
    """

    def __init__(self, min_interval_ms: int = 1000, clock: Callable[[], float] = time.time):
        self.min_interval_ms = min_interval_ms
        self.clock = clock
        self.last_seen: Dict[str, float] = {}

    def acquire(self, session_id: str, now: Optional[float] = None) -> float:
        """
        检查并占用会话的请求名额。

        输入：
            session_id: 会话ID
            now: 当前时间（秒），为空时取 clock()

        输出：
            float: 记录下的时间戳

        异常：
            RateLimitError: 间隔不足时抛出，携带剩余等待毫秒数
        """
        now = self.clock() if now is None else now
        last = self.last_seen.get(session_id)
        if last is not None:
            elapsed_ms = (now - last) * 1000
            if elapsed_ms < self.min_interval_ms:
                wait_ms = int(round(self.min_interval_ms - elapsed_ms))
                raise RateLimitError(
                    f"Please wait {self.min_interval_ms // 1000 or 1}s between messages.",
                    retry_after_ms=max(wait_ms, 1),
                )
        self.last_seen[session_id] = now
        return now

    def remove(self, session_id: str) -> None:
        self.last_seen.pop(session_id, None)

    def idle_since(self, cutoff: float) -> List[str]:
        # 返回最近请求早于 cutoff 的会话ID
        return [sid for sid, ts in self.last_seen.items() if ts < cutoff]
