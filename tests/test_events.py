"""事件总线测试：内存回退实现的容量上限与 Redis 不可用时的回退。"""

import redis

from app.packages.workspace.core import events
from app.packages.workspace.core.constants import IN_MEMORY_EVENT_LIMIT
from app.packages.workspace.core.events import InMemoryEventBus, build_event_bus


def test_in_memory_bus_keeps_only_latest_events():
    bus = InMemoryEventBus(maxlen=3)
    for i in range(10):
        bus.publish("file.created", "p1", {"seq": i})

    assert len(bus.events) == 3
    assert [event["payload"]["seq"] for event in bus.named("file.created")] == [7, 8, 9]


def test_redis_outage_falls_back_to_bounded_bus(monkeypatch):
    def unreachable(*args, **kwargs):
        raise redis.ConnectionError("connection refused")

    monkeypatch.setattr(events, "RedisEventBus", unreachable)
    monkeypatch.setattr(events.get_settings(), "event_bus_enabled", True)

    bus = build_event_bus()
    assert isinstance(bus, InMemoryEventBus)

    for i in range(IN_MEMORY_EVENT_LIMIT + 50):
        bus.publish("file.content_written", "p1", {"seq": i})
    assert len(bus.events) == IN_MEMORY_EVENT_LIMIT
    assert bus.events[0]["payload"]["seq"] == 50
