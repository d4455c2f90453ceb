"""
Driving log export.

Usage:
    python -m roadlog.reports activity_log.csv [--kind start --kind park] [--tz Europe/London]
"""
import argparse
import asyncio

import pandas as pd
import pytz

from roadlog.config import DATABASE_URL, LOCAL_TZ
from roadlog.database import init_models, make_engine, make_sessionmaker
from roadlog.event_store import EventStore
from roadlog.events import EventKind

COLUMNS = ["id", "type", "start_local", "end_local", "duration_min", "label", "address", "lat", "lon"]


def events_frame(events, tz_name: str = LOCAL_TZ) -> pd.DataFrame:
    tz = pytz.timezone(tz_name)
    rows = []
    for e in events:
        rows.append({
            "id": e.id,
            "type": e.kind.value,
            "start_local": e.timestamp.astimezone(tz).strftime("%Y-%m-%d %H:%M"),
            "end_local": e.end_timestamp.astimezone(tz).strftime("%Y-%m-%d %H:%M") if e.end_timestamp else None,
            "duration_min": e.duration_minutes,
            "label": e.label,
            "address": e.address,
            "lat": e.lat,
            "lon": e.lon,
        })
    return pd.DataFrame(rows, columns=COLUMNS)


def export_events_csv(events, path, tz_name: str = LOCAL_TZ) -> pd.DataFrame:
    df = events_frame(events, tz_name)
    df.to_csv(path, index=False)
    return df


async def _export(path, kinds, tz_name, database_url):
    engine = make_engine(database_url)
    await init_models(engine)
    store = EventStore(make_sessionmaker(engine))
    try:
        await store.load()
        events = [e for e in store.events if not kinds or e.kind in kinds]
        return export_events_csv(events, path, tz_name)
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    p = argparse.ArgumentParser(description="Export the driving log to CSV")
    p.add_argument("out", help="Output CSV path")
    p.add_argument("--kind", action="append", choices=[k.value for k in EventKind], default=[])
    p.add_argument("--tz", default=LOCAL_TZ, help="Time zone for the local time columns")
    p.add_argument("--db", default=DATABASE_URL, help="SQLAlchemy DB URL (overrides .env)")
    args = p.parse_args(argv)

    df = asyncio.run(_export(args.out, {EventKind(k) for k in args.kind}, args.tz, args.db))
    print(f"Wrote {len(df)} events to {args.out}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
