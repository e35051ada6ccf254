"""
Compare-and-set status transitions shared by listings, offers, orders and withdrawals.

A transition only commits if the row is still in the status the caller observed,
so two requests racing on the same entity cannot both win; the loser gets a
ConflictException carrying the status it lost to.
"""
from typing import Any, Dict, Iterable, Optional
from uuid import UUID
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from hypemarket.core.exceptions import ConflictException
from hypemarket.models.order import StatusTransition
from hypemarket.utils.logger import logger


def _value(status) -> Optional[str]:
    return getattr(status, "value", status)


def record_transition(
    db: AsyncSession,
    entity,
    from_status,
    to_status,
    actor_id: Optional[UUID] = None,
    note: Optional[str] = None,
) -> StatusTransition:
    entry = StatusTransition(
        entity_type=type(entity).__name__.lower(),
        entity_id=entity.id,
        from_status=_value(from_status),
        to_status=_value(to_status),
        actor_id=actor_id,
        note=note[:500] if note else None,
    )
    db.add(entry)
    return entry


async def compare_and_set(
    db: AsyncSession,
    model,
    entity_id: UUID,
    expected,
    values: Dict[str, Any],
    criteria: Iterable = (),
) -> bool:
    stmt = (
        update(model)
        .where(model.id == entity_id, model.status == expected, *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def reload(db: AsyncSession, model, entity_id: UUID):
    return await db.get(model, entity_id, populate_existing=True)


async def transition(
    db: AsyncSession,
    entity,
    to_status,
    *,
    allowed: Iterable,
    actor_id: Optional[UUID] = None,
    note: Optional[str] = None,
    values: Optional[Dict[str, Any]] = None,
    criteria: Iterable = (),
):
    """Move ``entity`` to ``to_status`` if its current status is in ``allowed``.

    Does not commit; the caller owns the transaction so that side effects
    (order creation, ledger credit) land atomically with the status change.
    """
    model = type(entity)
    name = model.__name__
    observed = entity.status
    allowed = tuple(allowed)

    if observed not in allowed:
        raise ConflictException(
            f"{name} {entity.id} is {_value(observed)}, expected one of "
            f"{', '.join(_value(s) for s in allowed)}"
        )

    changes = dict(values or {})
    changes["status"] = to_status
    if not await compare_and_set(db, model, entity.id, observed, changes, criteria):
        current = await reload(db, model, entity.id)
        current_status = _value(current.status) if current is not None else "missing"
        logger.warning(
            f"{name} {entity.id} transition {_value(observed)} -> {_value(to_status)} lost race "
            f"(now {current_status})"
        )
        raise ConflictException(
            f"{name} {entity.id} changed concurrently (now {current_status}); refresh and retry"
        )

    record_transition(db, entity, observed, to_status, actor_id=actor_id, note=note)
    updated = await reload(db, model, entity.id)
    logger.info(f"{name} {entity.id}: {_value(observed)} -> {_value(to_status)}")
    return updated
