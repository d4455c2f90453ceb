# roadlog/worker.py
"""
Activity classifier stream backed by a redis stream + consumer group.

Readings are pushed by POST /activity (or directly by the device bridge) and
consumed here in arrival order. A record is acked and deleted once the consumer
has finished with it; undecodable records are acked and deleted immediately so
they cannot poison the group.
"""
import asyncio
import json

import redis

from roadlog.config import CONSUMER_NAME
from roadlog.crud import to_dt
from roadlog.logging_config import get_logger
from roadlog.monitor import ActivityReading
from roadlog.variables import ACTIVITY_GROUP, ACTIVITY_STREAM

logger = get_logger("worker", "worker.log")


def reading_from_payload(payload: dict) -> ActivityReading:
    """Raises KeyError/TypeError/ValueError on malformed payloads."""
    activity_type = payload.get("type") or payload["activityType"]
    confidence = int(payload["confidence"])
    if not 0 <= confidence <= 100:
        raise ValueError(f"confidence out of range: {confidence}")
    ts = to_dt(payload.get("ts")) if payload.get("ts") is not None else None
    return ActivityReading.create(activity_type, confidence, ts)


async def publish_reading(r, payload: dict, stream: str = ACTIVITY_STREAM) -> None:
    json_str = json.dumps(payload, ensure_ascii=False)
    await asyncio.get_running_loop().run_in_executor(None, lambda: r.xadd(stream, {"data": json_str}))


class RedisActivityStream:
    def __init__(self, r, stream: str = ACTIVITY_STREAM, group: str = ACTIVITY_GROUP,
                 consumer: str = CONSUMER_NAME, block_ms: int = 5000, batch: int = 100):
        self._r = r
        self._stream = stream
        self._group = group
        self._consumer = consumer
        self._block_ms = block_ms
        self._batch = batch
        self._closed = False

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    # ---------- Ensure Consumer Group ----------
    async def init_group(self) -> None:
        try:
            # Only NEW readings matter to the state machine: id="$", create stream if missing
            await self._run(lambda: self._r.xgroup_create(self._stream, self._group, id="$", mkstream=True))
            logger.info("Consumer group created.")
        except redis.exceptions.ResponseError as e:
            if "BUSYGROUP" in str(e):
                logger.info("Consumer group already exists.")
            else:
                raise

    def close(self) -> None:
        self._closed = True

    async def _ack(self, _id) -> None:
        try:
            await self._run(lambda: (self._r.xack(self._stream, self._group, _id), self._r.xdel(self._stream, _id)))
        except Exception as rexc:
            logger.exception(f"Failed to ack/xdel message {_id}: {rexc}")

    async def __aiter__(self):
        await self.init_group()
        logger.info("Listening for activity readings...")

        while not self._closed:
            try:
                msgs = await self._run(
                    lambda: self._r.xreadgroup(self._group, self._consumer, {self._stream: ">"},
                                               count=self._batch, block=self._block_ms)
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Activity stream read failed: {e}")
                # small sleep to avoid tight loop in case of unexpected fast failures
                await asyncio.sleep(1.0)
                continue

            for _, records in msgs or []:
                for _id, fields in records:
                    raw = fields.get(b"data") if b"data" in fields else fields.get("data")
                    try:
                        reading = reading_from_payload(json.loads(raw))
                    except (KeyError, TypeError, ValueError) as je:
                        logger.warning(f"Dropping malformed reading {_id}: {je!r}")
                        await self._ack(_id)
                        continue

                    yield reading
                    await self._ack(_id)
