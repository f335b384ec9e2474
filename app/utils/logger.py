import json
import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional


LOGGER_NAME = "chat-relay"
DEFAULT_LOG_PATH = "logs/chat-relay.log"


def setup_logger() -> logging.Logger:
    """
    初始化日志记录器，支持控制台与文件持久化。

    输入：
        无（从环境变量读取配置）

    输出：
        logging.Logger：配置好的日志记录器（重复调用返回同一实例，不重复添加 handler）。

    关键逻辑：
        - 标准输出：始终输出到 stdout，格式包含时间、等级、消息；
        - 文件持久化（可选）：当 `LOG_TO_FILE=1` 时，使用按大小滚动的文件记录；
          配置项：
            - LOG_FILE_PATH：日志文件路径，默认 `logs/chat-relay.log`；
            - LOG_MAX_BYTES：单文件最大字节数，默认 10_485_760（10MB）；
            - LOG_BACKUP_COUNT：保留滚动文件个数，默认 5；
        - 结构化上下文通过 `log_json` 追加。
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level_value)
    console.setFormatter(formatter)
    logger.addHandler(console)

    log_path = None
    if os.environ.get("LOG_TO_FILE", "0") == "1":
        log_path = os.environ.get("LOG_FILE_PATH", DEFAULT_LOG_PATH)
        max_bytes = int(os.environ.get("LOG_MAX_BYTES", "10485760"))
        backup_count = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
        log_dir = os.path.dirname(log_path)
        try:
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        except OSError as e:
            # 文件不可写时退回仅控制台输出
            logger.warning("logger.file.disabled | %s", e)
            log_path = None
        else:
            file_handler.setLevel(level_value)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.setLevel(level_value)
    # 避免与 uvicorn 的根记录器重复输出
    logger.propagate = False
    log_json(logger, logging.INFO, "logger.init", logLevel=level_name, path=log_path, content=get_content_log_config())
    return logger


def log_json(logger: logging.Logger, level: int, message: str, **kwargs: Any) -> None:
    """
    以 `事件名 | JSON上下文` 的格式记录结构化日志。

    输入：
        logger: 日志记录器实例
        level: 日志级别，如 logging.INFO
        message: 事件名，如 request.start
        **kwargs: 额外上下文，如 requestId、sessionId、耗时等
    """
    try:
        context = json.dumps(kwargs, ensure_ascii=False)
    except (TypeError, ValueError):
        context = f"context={kwargs}"
    logger.log(level, f"{message} | {context}")


def get_content_log_config() -> Dict[str, Any]:
    """
    读取内容日志相关配置。

    输出：
        Dict：
          - include_input: bool 是否记录用户输入预览
          - include_output: str 输出记录模式（none|final）
          - max_chars: int 单条内容最大记录字符数
          - redact: bool 是否启用基础脱敏
    """
    include_output = os.environ.get("LOG_INCLUDE_OUTPUT", "none").lower()
    if include_output not in ("none", "final"):
        include_output = "none"
    try:
        max_chars = int(os.environ.get("LOG_CONTENT_MAX_CHARS", "1000"))
    except ValueError:
        max_chars = 1000
    return {
        "include_input": os.environ.get("LOG_INCLUDE_INPUT", "0") == "1",
        "include_output": include_output,
        "max_chars": max_chars,
        "redact": os.environ.get("LOG_REDACT_ENABLED", "0") == "1",
    }


_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_PATTERN = re.compile(r"\b(\+?\d[\d\- ]{7,}\d)\b")
_SECRET_PATTERN = re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([A-Za-z0-9\-_/]{8,})")
_BEARER_PATTERN = re.compile(r"\bsk-[A-Za-z0-9\-_]{8,}")


def _mask_email(m: re.Match) -> str:
    name, _, domain = m.group(0).partition("@")
    masked_name = (name[0] + "***") if name else "***"
    masked_domain = (domain.split(".")[0][:1] + "***") if domain else "***"
    return f"{masked_name}@{masked_domain}"


def redact_text(text: str) -> str:
    """
    基础脱敏：邮箱、手机号/长数字串、键名后的密钥值、sk- 前缀的密钥。
    """
    text = _EMAIL_PATTERN.sub(_mask_email, text)
    text = _PHONE_PATTERN.sub(lambda m: m.group(0)[:3] + "***" + m.group(0)[-2:], text)
    text = _SECRET_PATTERN.sub(lambda m: m.group(1) + "=***", text)
    return _BEARER_PATTERN.sub("sk-***", text)


def build_preview(text: Optional[str], max_chars: int, redact: bool) -> Dict[str, Any]:
    """
    构造内容预览，包含原始长度与截断后片段。

    输出：
        Dict：{"text_len": int, "preview": str}
    """
    if not text:
        return {"text_len": 0, "preview": ""}
    src = redact_text(text) if redact else text
    if len(src) > max_chars:
        return {"text_len": len(text), "preview": src[:max_chars] + "…(truncated)"}
    return {"text_len": len(text), "preview": src}
