from __future__ import annotations

from bulkline.cache import MemoryCache
from bulkline.events import CallbackEventSink, RecordingEventSink, emit_safely


class Ticker:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entries_expire() -> None:
    ticker = Ticker()
    cache = MemoryCache(clock=ticker)
    cache.put("k", {"v": 1}, ttl_s=10)

    assert cache.get("k") == {"v": 1}
    ticker.now = 10
    assert cache.get("k", "gone") == "gone"


def test_add_only_when_absent_or_expired() -> None:
    ticker = Ticker()
    cache = MemoryCache(clock=ticker)

    assert cache.add("k", 1, ttl_s=5)
    assert not cache.add("k", 2, ttl_s=5)
    assert cache.get("k") == 1
    ticker.now = 6
    assert cache.add("k", 3, ttl_s=5)
    assert cache.get("k") == 3


def test_forget_and_clear() -> None:
    cache = MemoryCache()
    cache.put("a", 1, ttl_s=60)
    cache.put("b", 2, ttl_s=60)

    cache.forget("a")
    cache.forget("missing")
    assert cache.get("a") is None
    cache.clear()
    assert cache.get("b") is None


def test_emit_safely_swallows_sink_errors(caplog) -> None:
    def _broken(name, payload):
        raise RuntimeError("webhook down")

    emit_safely(CallbackEventSink(_broken), "execution.completed", {"id": "e1"})

    assert "event sink failed" in caplog.text


def test_recording_sink() -> None:
    sink = RecordingEventSink()
    emit_safely(sink, "execution.started", {"id": "e1"})
    assert sink.events == [("execution.started", {"id": "e1"})]
    assert sink.names() == ["execution.started"]
