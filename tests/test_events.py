from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from cai.core.config import ObservabilitySettings
from cai.services.events import BufferedEventSink, LoggingEventSink, NullEventSink, build_event_sink


def test_buffered_sink_drops_overflow_without_blocking():
    before = REGISTRY.get_sample_value("cai_observability_events_dropped_total") or 0.0
    sink = BufferedEventSink(maxsize=2)

    for index in range(5):
        sink.emit("routing.decision", index=index)

    assert sink.qsize() == 2
    assert sink.dropped == 3
    assert REGISTRY.get_sample_value("cai_observability_events_dropped_total") == pytest.approx(before + 3.0)
    assert [event.fields["index"] for event in sink.drain()] == [0, 1]
    assert sink.qsize() == 0


@pytest.mark.asyncio
async def test_buffered_sink_hands_events_to_consumer():
    sink = BufferedEventSink(maxsize=4)
    sink.emit("synthesis.quality", request_id="req-1")

    event = await sink.get()

    assert event.name == "synthesis.quality"
    assert event.as_dict()["request_id"] == "req-1"


def test_buffered_sink_rejects_empty_capacity():
    with pytest.raises(ValueError):
        BufferedEventSink(maxsize=0)


@pytest.mark.parametrize(
    ("kind", "expected"),
    [("none", NullEventSink), ("buffered", BufferedEventSink), ("logging", LoggingEventSink)],
)
def test_build_event_sink_follows_settings(kind, expected):
    sink = build_event_sink(ObservabilitySettings(event_sink=kind, event_buffer_size=8))

    assert isinstance(sink, expected)
