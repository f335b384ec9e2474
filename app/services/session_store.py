from typing import Dict, Iterable, List


class SessionStore:
    """
    内存会话存储，按会话ID维护有界的对话记录。

    说明：
        - 使用字典维护 sessionId -> List[dict]，每条消息为 {"role", "content"}
        - 下标 0 恒为系统提示词消息，首次写入时惰性创建
        - 总长度不超过 max_messages（默认 21 = 1 条 system + 20 条对话），
          超出时从下标 1 开始淘汰最旧消息，保持原有顺序

    参数：
        system_prompt: 系统提示词文本
        max_messages: 单会话最大消息数，默认 21

    方法：
        get(session_id): 返回消息列表副本（不存在则为空列表）
        append(session_id, role, content): 追加消息并裁剪
        delete(session_id): 删除会话（幂等）
    """

    def __init__(self, system_prompt: str, max_messages: int = 21):
        if max_messages < 2:
            raise ValueError("max_messages must leave room for at least one exchange message")
        self.system_prompt = system_prompt
        self.max_messages = max_messages
        self.store: Dict[str, List[dict]] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.store

    def __len__(self) -> int:
        return len(self.store)

    def _ensure(self, session_id: str) -> List[dict]:
        messages = self.store.get(session_id)
        if messages is None:
            messages = [{"role": "system", "content": self.system_prompt}]
            self.store[session_id] = messages
        return messages

    def get(self, session_id: str) -> List[dict]:
        return [dict(m) for m in self.store.get(session_id, [])]

    def append(self, session_id: str, role: str, content: str) -> List[dict]:
        """
        追加一条消息。

        输入：
            session_id: 会话ID
            role: user / assistant
            content: 文本

        输出：
            List[dict]: 追加并裁剪后的完整消息列表副本，可直接作为上游 messages 发送。
        """
        messages = self._ensure(session_id)
        messages.append({"role": role, "content": content})
        overflow = len(messages) - self.max_messages
        if overflow > 0:
            # 保留 system 消息，删除紧随其后的最旧消息
            del messages[1 : 1 + overflow]
        return [dict(m) for m in messages]

    def delete(self, session_id: str) -> bool:
        return self.store.pop(session_id, None) is not None

    def delete_many(self, session_ids: Iterable[str]) -> None:
        for sid in session_ids:
            self.store.pop(sid, None)
