from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings

engine = create_async_engine(settings.database_url, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session


async def init_models() -> None:
    """Create any missing tables."""
    from app.models import account, user  # noqa: F401  (registers mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ─── Atomic write batch ────────────────────────────────────────────────────────

_SET = "set"
_DELETE = "delete"
_LOAD_CHUNK = 500  # keeps IN (...) under bind-parameter limits


class WriteBatch:
    """Set-with-merge and delete operations applied and committed as one unit.

    Operations are queued in memory and only touch the session in ``commit``,
    which either persists every queued write or none of them. Writes to the
    same (model, id) collapse: later ``set`` values merge over earlier ones,
    and a ``delete`` discards any earlier ``set``.
    """

    def __init__(self, db: AsyncSession):
        self._db = db
        self._ops: dict[tuple[type[Base], str], tuple[str, dict[str, Any], dict[str, Any]]] = {}

    def __len__(self) -> int:
        return len(self._ops)

    def set(
        self,
        model: type[Base],
        key: str,
        values: dict[str, Any],
        *,
        on_create: dict[str, Any] | None = None,
    ) -> None:
        """Queue an upsert. ``on_create`` fields are written only for new rows."""
        prev = self._ops.get((model, key))
        if prev is not None and prev[0] == _SET:
            values = {**prev[1], **values}
            on_create = {**prev[2], **(on_create or {})}
        self._ops[(model, key)] = (_SET, dict(values), dict(on_create or {}))

    def delete(self, model: type[Base], key: str) -> None:
        self._ops[(model, key)] = (_DELETE, {}, {})

    async def commit(self) -> None:
        try:
            existing = await self._load_existing()
            for (model, key), (op, values, on_create) in self._ops.items():
                obj = existing.get((model, key))
                if op == _DELETE:
                    if obj is not None:
                        await self._db.delete(obj)
                elif obj is None:
                    self._db.add(model(id=key, **{**on_create, **values}))
                else:
                    for field, value in values.items():
                        setattr(obj, field, value)
            await self._db.commit()
        except Exception:
            await self._db.rollback()
            raise
        finally:
            self._ops.clear()

    async def _load_existing(self) -> dict[tuple[type[Base], str], Base]:
        keys_by_model: dict[type[Base], list[str]] = {}
        for model, key in self._ops:
            keys_by_model.setdefault(model, []).append(key)

        found: dict[tuple[type[Base], str], Base] = {}
        for model, keys in keys_by_model.items():
            for i in range(0, len(keys), _LOAD_CHUNK):
                result = await self._db.execute(
                    select(model).where(model.id.in_(keys[i:i + _LOAD_CHUNK]))
                )
                for obj in result.scalars().all():
                    found[(model, obj.id)] = obj
        return found
