from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from roadlog.models import KeyValue, NamedPlace
import datetime as dt


async def read_value(db: AsyncSession, key: str):
    row = await db.get(KeyValue, key)
    return row.value if row else None


async def write_value(db: AsyncSession, key: str, value: str) -> None:
    row = await db.get(KeyValue, key)
    if row:
        row.value = value
    else:
        db.add(KeyValue(key=key, value=value))
    await db.commit()


async def list_places(db: AsyncSession):
    rows = await db.execute(select(NamedPlace).order_by(NamedPlace.id))
    return rows.scalars().all()


async def upsert_place(db: AsyncSession, label: str, lat: float, lon: float, radius_m: float) -> NamedPlace:
    key = label.lower()
    q = await db.execute(select(NamedPlace).where(NamedPlace.label_key == key))
    row = q.scalar_one_or_none()
    if row:
        row.label    = label
        row.lat      = lat
        row.lon      = lon
        row.radius_m = radius_m
    else:
        row = NamedPlace(label=label, label_key=key, lat=lat, lon=lon, radius_m=radius_m)
        db.add(row)
    await db.commit()
    await db.refresh(row)
    return row


async def delete_place(db: AsyncSession, label: str) -> bool:
    res = await db.execute(delete(NamedPlace).where(NamedPlace.label_key == label.lower()))
    await db.commit()
    return (res.rowcount or 0) > 0



def to_dt(v):
    if isinstance(v, dt.datetime):
        # ensure tz-aware
        return v if v.tzinfo else v.replace(tzinfo=dt.timezone.utc)

    if isinstance(v, str):
        dt_obj = dt.datetime.fromisoformat(v.replace("Z", "+00:00"))
        return dt_obj if dt_obj.tzinfo else dt_obj.replace(tzinfo=dt.timezone.utc)

    if isinstance(v, (int, float)) and not isinstance(v, bool):
        # epoch milliseconds
        return dt.datetime.fromtimestamp(v / 1000.0, tz=dt.timezone.utc)

    return None
