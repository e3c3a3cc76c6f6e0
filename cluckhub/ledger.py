"""
Ledger consistency rules.

Every sale, expenditure, loss and egg-collection event keeps the aggregate
fields of the flock it references (count, total_cost, total_feed_consumed,
total_eggs_collected, eggs_in_stock) in step with itself. total_eggs_collected
is cumulative; egg sales draw on eggs_in_stock. Each operation:

1. validates against the flock as currently stored and raises
   ValidationError before anything is written,
2. writes the event record,
3. moves the flock aggregates with a single conditional UPDATE
   (``col = col + delta`` guarded by the stock invariants),
4. commits both in one transaction.

If the guarded UPDATE matches no row the flock was deleted or drained
between the check and the write; the whole transaction is rolled back and
PartialConsistencyError is raised.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import update, select, func
from sqlalchemy.ext.asyncio import AsyncSession

from . import models, schemas, metrics
from .errors import ValidationError, NotFoundError, AccessError, PartialConsistencyError

logger = logging.getLogger(__name__)

FEED_CATEGORY = "Feed"
CHICKS_CATEGORY = "Day Old Chicks"
# Categories that must be charged to a flock
FLOCK_CATEGORIES = {"Feed", "Medicine", "Maintenance"}
DEFAULT_CHICK_WEIGHT = 0.1  # kg


# ==================== LOOKUPS ====================

async def get_owned(session: AsyncSession, model, record_id: str, owner_id: str, operation: str = "get"):
    """Load a record by id, refusing records that belong to another user."""
    record = await session.get(model, record_id, populate_existing=True)
    if record is None:
        raise NotFoundError(f"{model.__name__} not found")
    if record.owner_id != owner_id:
        raise AccessError(operation, f"users/{owner_id}/{model.__tablename__}/{record_id}")
    return record


async def _find_flock(session: AsyncSession, owner_id: str, flock_id: Optional[str]) -> Optional[models.Flock]:
    """Flock lookup that tolerates dangling references."""
    if not flock_id:
        return None
    flock = await session.get(models.Flock, flock_id, populate_existing=True)
    if flock is None or flock.owner_id != owner_id:
        return None
    return flock


async def _require_expenditure_flock(session: AsyncSession, owner_id: str, flock_id: str) -> models.Flock:
    try:
        return await get_owned(session, models.Flock, flock_id, owner_id)
    except NotFoundError:
        raise ValidationError(f"Flock '{flock_id}' does not exist.", field="flock_id")


async def _birds_sold(session: AsyncSession, owner_id: str, flock_id: str) -> int:
    Sale = models.Sale
    stmt = select(func.coalesce(func.sum(Sale.quantity), 0)).where(
        Sale.owner_id == owner_id, Sale.flock_id == flock_id, Sale.sale_type == "Birds"
    )
    return (await session.execute(stmt)).scalar() or 0


# ==================== AGGREGATE UPDATES ====================

@asynccontextmanager
async def _ledger_write(session: AsyncSession, action: str):
    try:
        yield
        await session.commit()
    except PartialConsistencyError as exc:
        await session.rollback()
        logger.warning("%s rolled back: %s", action, exc.message)
        raise
    except Exception:
        await session.rollback()
        raise
    logger.info("%s committed", action)


async def _apply_flock_delta(
    session: AsyncSession,
    owner_id: str,
    flock_id: str,
    *,
    birds: int = 0,
    eggs: int = 0,
    egg_stock: int = 0,
    cost: float = 0.0,
    feed: float = 0.0,
) -> None:
    Flock = models.Flock
    stmt = update(Flock).where(Flock.id == flock_id, Flock.owner_id == owner_id)
    values = {}
    if birds:
        values["count"] = Flock.count + birds
        if birds < 0:
            stmt = stmt.where(Flock.count >= -birds)
        else:
            stmt = stmt.where(Flock.count + birds <= Flock.initial_count)
    # Collected eggs also go into stock
    if eggs:
        values["total_eggs_collected"] = Flock.total_eggs_collected + eggs
    stock = eggs + egg_stock
    if stock:
        values["eggs_in_stock"] = Flock.eggs_in_stock + stock
        if stock < 0:
            stmt = stmt.where(Flock.eggs_in_stock >= -stock)
    if cost:
        values["total_cost"] = Flock.total_cost + cost
    if feed:
        values["total_feed_consumed"] = Flock.total_feed_consumed + feed
    if not values:
        return

    result = await session.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PartialConsistencyError(
            f"Flock {flock_id} changed before its totals could be updated; nothing was saved.",
            flock_id=flock_id,
        )


# ==================== FLOCKS ====================

async def create_flock(session: AsyncSession, owner_id: str, data: schemas.FlockCreate) -> models.Flock:
    flock = models.Flock(
        owner_id=owner_id,
        breed=data.breed,
        type=data.type.value,
        count=data.count,
        initial_count=data.initial_count,
        hatch_date=data.hatch_date,
        average_weight=data.average_weight,
        total_feed_consumed=0.0,
        total_cost=0.0,
        egg_production_rate=0.0,
        total_eggs_collected=0,
        eggs_in_stock=0,
    )
    session.add(flock)
    async with _ledger_write(session, f"new {data.type.value} flock of {data.count}"):
        await session.flush()
    return flock


async def update_flock(session: AsyncSession, owner_id: str, flock_id: str, data: schemas.FlockUpdate) -> models.Flock:
    """Edit descriptive fields and counts; ledger totals are not editable here."""
    flock = await get_owned(session, models.Flock, flock_id, owner_id, "update")
    changes = data.model_dump(exclude_unset=True, exclude_none=True)
    if "type" in changes:
        changes["type"] = changes["type"].value

    count = changes.get("count", flock.count)
    initial_count = changes.get("initial_count", flock.initial_count)
    if count > initial_count:
        raise ValidationError("Current count cannot be greater than initial count.", field="count")
    # Sold birds must still fit back under initial_count when their sales are undone
    birds_sold = await _birds_sold(session, owner_id, flock_id)
    if count + birds_sold > initial_count:
        raise ValidationError(
            f"{birds_sold} birds of this flock are recorded as sold; current count plus sold birds "
            f"cannot exceed the initial count of {initial_count}.",
            field="count" if "count" in changes else "initial_count",
        )

    async with _ledger_write(session, f"edit of flock {flock_id}"):
        for key, value in changes.items():
            setattr(flock, key, value)
        if flock.type == "Layer":
            flock.egg_production_rate = metrics.egg_production_rate(
                flock.total_eggs_collected or 0, flock.count, flock.hatch_date
            )
    return flock


async def delete_flock(session: AsyncSession, owner_id: str, flock_id: str) -> dict:
    """
    Remove a flock. Sales and expenditures that reference it are kept and
    left pointing at the missing flock.
    """
    flock = await get_owned(session, models.Flock, flock_id, owner_id, "delete")

    orphaned = {}
    for key, model in (("orphaned_sales", models.Sale), ("orphaned_expenditures", models.Expenditure)):
        stmt = select(func.count()).select_from(model).where(
            model.owner_id == owner_id, model.flock_id == flock_id
        )
        orphaned[key] = (await session.execute(stmt)).scalar() or 0

    async with _ledger_write(session, f"deletion of flock {flock_id}"):
        await session.delete(flock)

    if orphaned["orphaned_sales"] or orphaned["orphaned_expenditures"]:
        logger.warning(
            "Flock %s deleted with %d sales and %d expenditures still referencing it",
            flock_id, orphaned["orphaned_sales"], orphaned["orphaned_expenditures"],
        )
    return orphaned


async def record_loss(session: AsyncSession, owner_id: str, flock_id: str, count: int) -> models.Flock:
    flock = await get_owned(session, models.Flock, flock_id, owner_id, "update")
    if count > flock.count:
        raise ValidationError(
            f"Cannot record a loss of {count} birds as the flock only has {flock.count} remaining.",
            field="count",
        )
    async with _ledger_write(session, f"loss of {count} in flock {flock_id}"):
        await _apply_flock_delta(session, owner_id, flock_id, birds=-count)
    await session.refresh(flock)
    return flock


async def record_eggs(session: AsyncSession, owner_id: str, flock_id: str, count: int) -> models.Flock:
    flock = await get_owned(session, models.Flock, flock_id, owner_id, "update")
    if flock.type != "Layer":
        raise ValidationError("Egg collection can only be recorded for Layer flocks.", field="flock_id")

    async with _ledger_write(session, f"collection of {count} eggs in flock {flock_id}"):
        await _apply_flock_delta(session, owner_id, flock_id, eggs=count)
        await session.refresh(flock)
        flock.egg_production_rate = metrics.egg_production_rate(
            flock.total_eggs_collected, flock.count, flock.hatch_date
        )
    return flock


# ==================== SALES ====================

def _stock(flock: models.Flock, sale_type: str) -> int:
    if sale_type == "Eggs":
        return flock.eggs_in_stock or 0
    return flock.count


def _inventory_delta(sale_type: str, quantity: int) -> dict:
    if sale_type == "Eggs":
        return {"egg_stock": quantity}
    return {"birds": quantity}


def _check_sale(flock: models.Flock, sale_type: str, quantity: int) -> None:
    if flock.type == "Broiler" and sale_type == "Eggs":
        raise ValidationError("Broiler flocks can only sell birds.", field="sale_type")
    available = _stock(flock, sale_type)
    if quantity > available:
        unit = "eggs" if sale_type == "Eggs" else "birds"
        raise ValidationError(
            f"Not enough {unit}: flock {flock.id} only has {available} {unit}.",
            field="quantity",
        )


async def record_sale(session: AsyncSession, owner_id: str, data: schemas.SaleCreate) -> models.Sale:
    flock = await get_owned(session, models.Flock, data.flock_id, owner_id)
    sale_type = data.sale_type.value
    _check_sale(flock, sale_type, data.quantity)

    sale = models.Sale(
        owner_id=owner_id,
        flock_id=data.flock_id,
        sale_type=sale_type,
        quantity=data.quantity,
        price_per_unit=data.price_per_unit,
        customer=data.customer,
        sale_date=data.sale_date,
        total=data.quantity * data.price_per_unit,
    )
    async with _ledger_write(session, f"sale of {data.quantity} {sale_type} from flock {flock.id}"):
        session.add(sale)
        await session.flush()
        await _apply_flock_delta(session, owner_id, flock.id, **_inventory_delta(sale_type, -data.quantity))
    return sale


async def update_sale(session: AsyncSession, owner_id: str, sale_id: str, data: schemas.SaleCreate) -> models.Sale:
    """
    Same flock and sale type: only the quantity difference moves.
    Otherwise the old quantity goes back to the old flock in full and the
    new quantity is taken from the new flock in full.
    """
    sale = await get_owned(session, models.Sale, sale_id, owner_id, "update")
    target = await get_owned(session, models.Flock, data.flock_id, owner_id)
    sale_type = data.sale_type.value
    same_target = sale.flock_id == data.flock_id and sale.sale_type == sale_type

    if same_target:
        delta = data.quantity - sale.quantity
        _check_sale(target, sale_type, max(delta, 0))
        original = None
    else:
        _check_sale(target, sale_type, data.quantity)
        original = await _find_flock(session, owner_id, sale.flock_id)

    old_flock_id, old_type, old_quantity = sale.flock_id, sale.sale_type, sale.quantity

    async with _ledger_write(session, f"edit of sale {sale_id}"):
        sale.flock_id = data.flock_id
        sale.sale_type = sale_type
        sale.quantity = data.quantity
        sale.price_per_unit = data.price_per_unit
        sale.customer = data.customer
        sale.sale_date = data.sale_date
        sale.total = data.quantity * data.price_per_unit
        await session.flush()

        if same_target:
            if delta:
                await _apply_flock_delta(session, owner_id, target.id, **_inventory_delta(sale_type, -delta))
        else:
            if original is not None:
                await _apply_flock_delta(session, owner_id, original.id, **_inventory_delta(old_type, old_quantity))
            else:
                logger.warning("Sale %s referenced missing flock %s; nothing returned to it", sale_id, old_flock_id)
            await _apply_flock_delta(session, owner_id, target.id, **_inventory_delta(sale_type, -data.quantity))
    return sale


async def delete_sale(session: AsyncSession, owner_id: str, sale_id: str) -> None:
    sale = await get_owned(session, models.Sale, sale_id, owner_id, "delete")
    flock = await _find_flock(session, owner_id, sale.flock_id)

    async with _ledger_write(session, f"deletion of sale {sale_id}"):
        await session.delete(sale)
        if flock is not None:
            await _apply_flock_delta(session, owner_id, flock.id, **_inventory_delta(sale.sale_type, sale.quantity))
        else:
            logger.warning("Deleted sale %s of missing flock %s", sale_id, sale.flock_id)


# ==================== EXPENDITURES ====================

def _feed_quantity(category: str, quantity: float) -> float:
    return quantity if category == FEED_CATEGORY else 0.0


def _check_expenditure(data: schemas.ExpenditureCreate) -> float:
    if data.quantity <= 0:
        raise ValidationError("Quantity must be greater than zero.", field="quantity")
    amount = data.quantity * data.unit_price
    if amount <= 0:
        raise ValidationError("Total amount must be greater than zero.", field="amount")
    if data.category.value in FLOCK_CATEGORIES and not data.flock_id:
        raise ValidationError("Please select a flock for this expenditure category.", field="flock_id")
    return amount


async def record_expenditure(session: AsyncSession, owner_id: str, data: schemas.ExpenditureCreate) -> models.Expenditure:
    """
    Record a purchase and charge it to its flock. Day-old chicks bought
    without a flock start a new Broiler flock that the purchase is charged to.
    """
    amount = _check_expenditure(data)
    category = data.category.value
    flock = None
    if data.flock_id:
        flock = await _require_expenditure_flock(session, owner_id, data.flock_id)

    new_flock = category == CHICKS_CATEGORY and flock is None
    if new_flock and not float(data.quantity).is_integer():
        raise ValidationError("Day-old chick quantity must be a whole number of birds.", field="quantity")

    async with _ledger_write(session, f"{category} expenditure of {amount:.2f}"):
        if new_flock:
            flock = models.Flock(
                owner_id=owner_id,
                breed=data.description or "Unknown Breed",
                type="Broiler",
                count=int(data.quantity),
                initial_count=int(data.quantity),
                hatch_date=data.expenditure_date,
                average_weight=DEFAULT_CHICK_WEIGHT,
                total_feed_consumed=0.0,
                total_cost=0.0,
                egg_production_rate=0.0,
                total_eggs_collected=0,
                eggs_in_stock=0,
            )
            session.add(flock)
            await session.flush()
            logger.info("Started flock %s from %d day-old chicks", flock.id, flock.count)

        expenditure = models.Expenditure(
            owner_id=owner_id,
            category=category,
            quantity=data.quantity,
            unit_price=data.unit_price,
            amount=amount,
            description=data.description,
            expenditure_date=data.expenditure_date,
            flock_id=flock.id if flock is not None else None,
        )
        session.add(expenditure)
        await session.flush()

        if flock is not None:
            await _apply_flock_delta(
                session, owner_id, flock.id,
                cost=amount, feed=_feed_quantity(category, data.quantity),
            )
    return expenditure


async def update_expenditure(
    session: AsyncSession, owner_id: str, expenditure_id: str, data: schemas.ExpenditureCreate
) -> models.Expenditure:
    expenditure = await get_owned(session, models.Expenditure, expenditure_id, owner_id, "update")
    amount = _check_expenditure(data)
    category = data.category.value
    target = None
    if data.flock_id:
        target = await _require_expenditure_flock(session, owner_id, data.flock_id)

    old_flock_id = expenditure.flock_id
    old_amount = expenditure.amount
    old_feed = _feed_quantity(expenditure.category, expenditure.quantity)
    new_feed = _feed_quantity(category, data.quantity)
    same_flock = old_flock_id is not None and old_flock_id == data.flock_id
    original = None
    if old_flock_id and not same_flock:
        original = await _find_flock(session, owner_id, old_flock_id)

    async with _ledger_write(session, f"edit of expenditure {expenditure_id}"):
        expenditure.category = category
        expenditure.quantity = data.quantity
        expenditure.unit_price = data.unit_price
        expenditure.amount = amount
        expenditure.description = data.description
        expenditure.expenditure_date = data.expenditure_date
        expenditure.flock_id = data.flock_id
        await session.flush()

        if same_flock:
            await _apply_flock_delta(
                session, owner_id, target.id,
                cost=amount - old_amount, feed=new_feed - old_feed,
            )
        else:
            if original is not None:
                await _apply_flock_delta(session, owner_id, original.id, cost=-old_amount, feed=-old_feed)
            elif old_flock_id:
                logger.warning("Expenditure %s referenced missing flock %s", expenditure_id, old_flock_id)
            if target is not None:
                await _apply_flock_delta(session, owner_id, target.id, cost=amount, feed=new_feed)
    return expenditure


async def delete_expenditure(session: AsyncSession, owner_id: str, expenditure_id: str) -> None:
    expenditure = await get_owned(session, models.Expenditure, expenditure_id, owner_id, "delete")
    flock = await _find_flock(session, owner_id, expenditure.flock_id)

    async with _ledger_write(session, f"deletion of expenditure {expenditure_id}"):
        await session.delete(expenditure)
        if flock is not None:
            await _apply_flock_delta(
                session, owner_id, flock.id,
                cost=-expenditure.amount,
                feed=-_feed_quantity(expenditure.category, expenditure.quantity),
            )
        elif expenditure.flock_id:
            logger.warning("Deleted expenditure %s of missing flock %s", expenditure_id, expenditure.flock_id)
