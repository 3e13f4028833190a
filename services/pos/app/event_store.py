"""
POS Service — イベントストア

売上・商品の変更をイベントとして追記する。状態変更と同じトランザクションで
書くので、ロールバックされた売上のイベントは残らない。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import event_store

logger = logging.getLogger(__name__)


async def append_event(
    session: AsyncSession,
    aggregate_id: int | str,
    aggregate_type: str,
    event: BaseModel,
) -> int:
    """
    集約の次のバージョンとしてイベントを追記する。

    同じバージョンを同時に書こうとすると UNIQUE 制約違反 (IntegrityError) になり、
    そのトランザクションはロールバックされる。
    """
    current_version = (
        await session.execute(
            select(func.coalesce(func.max(event_store.c.version), 0)).where(
                event_store.c.aggregate_id == str(aggregate_id),
                event_store.c.aggregate_type == aggregate_type,
            )
        )
    ).scalar_one()
    new_version = current_version + 1
    await session.execute(
        insert(event_store).values(
            aggregate_id=str(aggregate_id),
            aggregate_type=aggregate_type,
            event_type=type(event).__name__,
            event_data=event.model_dump_json(),
            version=new_version,
            created_at=datetime.now(timezone.utc),
        )
    )
    return new_version


def _to_dict(row) -> dict:
    return {
        "aggregate_id": row.aggregate_id,
        "aggregate_type": row.aggregate_type,
        "event_type": row.event_type,
        "event_data": json.loads(row.event_data),
        "version": row.version,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


async def load_events(
    session: AsyncSession,
    aggregate_type: str,
    aggregate_id: int | str,
) -> list[dict]:
    result = await session.execute(
        select(event_store)
        .where(
            event_store.c.aggregate_type == aggregate_type,
            event_store.c.aggregate_id == str(aggregate_id),
        )
        .order_by(event_store.c.version.asc())
    )
    return [_to_dict(row) for row in result.fetchall()]


async def load_all_events(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        select(event_store).order_by(event_store.c.id.asc())
    )
    return [_to_dict(row) for row in result.fetchall()]


async def publish(redis: aioredis.Redis | None, channel: str, event: BaseModel) -> None:
    """
    コミット済みのイベントを Redis Pub/Sub で発行する。

    状態はすでに DB に確定しているので、発行の失敗はログに残すだけ。
    REDIS_URL 未設定 (redis=None) のときは何もしない。
    """
    if redis is None:
        return
    try:
        await redis.publish(
            channel,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish %s on %s", type(event).__name__, channel)
