"""
请求上下文与结构化日志

request_id 通过 ContextVar 在一次请求（或一次定时任务）内自动传播，
由 RequestIdFilter 注入到每条日志记录，JsonFormatter 输出单行 JSON。
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

request_id_ctx_var: ContextVar[str] = ContextVar("request_id", default="-")


@contextmanager
def request_id_ctx(request_id: Optional[str] = None) -> Iterator[str]:
    """后台任务使用的上下文，退出时自动重置"""
    token = request_id_ctx_var.set(request_id or uuid.uuid4().hex)
    try:
        yield request_id_ctx_var.get()
    finally:
        request_id_ctx_var.reset(token)


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)
