import json

import pytest

from roadlog.worker import RedisActivityStream, publish_reading, reading_from_payload

from conftest import T0

TS = 1_714_588_920_000


def test_reading_from_payload_normalizes():
    r = reading_from_payload({"activityType": "IN_VEHICLE", "confidence": "75", "ts": TS})
    assert r.type == "in_vehicle"
    assert r.confidence == 75
    assert r.timestamp == T0


@pytest.mark.parametrize("payload", [
    {"confidence": 80},
    {"type": "still"},
    {"type": "still", "confidence": "high"},
    {"type": "still", "confidence": 101},
])
def test_malformed_payloads(payload):
    with pytest.raises((KeyError, TypeError, ValueError)):
        reading_from_payload(payload)


async def test_stream_yields_readings_and_drops_junk(fake_redis):
    stream = RedisActivityStream(fake_redis, stream="activity-test", block_ms=10)
    await stream.init_group()
    await stream.init_group()  # existing group is fine

    await publish_reading(fake_redis, {"type": "in_vehicle", "confidence": 90, "ts": TS}, stream="activity-test")
    fake_redis.xadd("activity-test", {"data": "not json"})
    await publish_reading(fake_redis, {"type": "still", "confidence": 70, "ts": TS + 1000}, stream="activity-test")

    seen = []
    async for reading in stream:
        seen.append(reading.type)
        if len(seen) == 2:
            stream.close()
    assert seen == ["in_vehicle", "still"]
    assert fake_redis.xlen("activity-test") <= 1
