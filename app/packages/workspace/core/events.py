"""事件总线：以“发后即忘”的方式投递后台任务与文件树变更通知。

优先使用 Redis 列表（``LPUSH`` 到 ``EVENT_STREAM_KEY``），Redis 不可用或被禁用时
回退到进程内存。发布失败只记日志，绝不影响文件树操作本身的结果。

事件结构：{"name": "file.deleted", "project_id": "...", "payload": {...}, "ts": "ISO"}
"""

from __future__ import annotations

import json
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

import redis

from app.packages.workspace.core.config import get_settings
from app.packages.workspace.core.constants import IN_MEMORY_EVENT_LIMIT
from app.packages.workspace.core.logger import logger


def build_event(name: str, project_id: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    return {
        "name": name,
        "project_id": project_id,
        "payload": payload or {},
        "ts": datetime.now(timezone.utc).isoformat(),
    }


class EventBus:
    """事件总线接口。"""

    def publish(self, name: str, project_id: str, payload: Optional[dict[str, Any]] = None) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError


class RedisEventBus(EventBus):
    def __init__(self, url: str, stream_key: str) -> None:
        self._client = redis.Redis.from_url(url, decode_responses=True)
        self._client.ping()
        self._stream_key = stream_key

    def publish(self, name: str, project_id: str, payload: Optional[dict[str, Any]] = None) -> None:
        event = build_event(name, project_id, payload)
        try:
            self._client.lpush(self._stream_key, json.dumps(event, ensure_ascii=False))
        except redis.RedisError:
            logger.warning("Event publish failed: %s project=%s", name, project_id, exc_info=True)


class InMemoryEventBus(EventBus):
    """内存事件总线：用于测试或缺少 Redis 时的回退实现。

    没有消费者读取，只保留最近 ``maxlen`` 条事件。
    """

    def __init__(self, maxlen: int = IN_MEMORY_EVENT_LIMIT) -> None:
        self.events: deque[dict[str, Any]] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def publish(self, name: str, project_id: str, payload: Optional[dict[str, Any]] = None) -> None:
        with self._lock:
            self.events.append(build_event(name, project_id, payload))

    def named(self, name: str) -> list[dict[str, Any]]:
        with self._lock:
            return [event for event in self.events if event["name"] == name]


def build_event_bus() -> EventBus:
    settings = get_settings()
    if not settings.event_bus_enabled:
        return InMemoryEventBus()
    try:
        bus = RedisEventBus(settings.redis_url, settings.event_stream_key)
        logger.info("Event bus initialized with Redis at %s", settings.redis_url)
        return bus
    except redis.RedisError as exc:
        logger.warning("Redis unavailable (%s), falling back to in-memory event bus", exc)
        return InMemoryEventBus()
