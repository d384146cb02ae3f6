import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, func, select

from . import events, models
from .audit import log_audit
from .db import get_session
from .entitlements import ActionCategory, FeatureGate, LimitGate
from .models import utc_now
from .permissions import Permissions
from .security import PermissionChecker, TenantContext

logger = logging.getLogger(__name__)

router = APIRouter()

OPEN_ORDER_STATUSES = (
    models.OrderStatus.pending,
    models.OrderStatus.preparing,
    models.OrderStatus.ready,
    models.OrderStatus.served,
    models.OrderStatus.bill_requested,
)


def _validate_menu_options(options: list[dict], kind: str) -> None:
    for option in options:
        if not option.get("name") or not isinstance(option.get("price_cents", 0), int):
            raise HTTPException(status_code=400, detail=f"Each {kind} needs a name and integer price_cents")


def _reject_nulls(update_data: dict, required: tuple[str, ...]) -> None:
    cleared = sorted(key for key in required if key in update_data and update_data[key] is None)
    if cleared:
        raise HTTPException(status_code=400, detail=f"Fields cannot be null: {', '.join(cleared)}")


# ============ TABLES ============

@router.get("/tables")
def list_tables(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.TABLES_READ))],
    session: Session = Depends(get_session),
) -> list[models.Table]:
    return session.exec(
        select(models.Table)
        .where(models.Table.client_id == current_user.client_id, models.Table.deleted_at == None)  # noqa: E711
        .order_by(models.Table.table_code)
    ).all()


@router.post("/tables", status_code=status.HTTP_201_CREATED)
def create_table(
    table_data: models.TableCreate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.TABLES_MANAGE))],
    _: Annotated[TenantContext, Depends(LimitGate("tables"))],
    session: Session = Depends(get_session),
) -> models.Table:
    code = table_data.table_code.strip()
    if not code:
        raise HTTPException(status_code=400, detail="Table code is required")
    existing = session.exec(
        select(models.Table).where(
            models.Table.client_id == current_user.client_id,
            models.Table.table_code == code,
            models.Table.deleted_at == None,  # noqa: E711
        )
    ).first()
    if existing:
        raise HTTPException(status_code=409, detail=f"Table {code} already exists")

    table = models.Table(client_id=current_user.client_id, table_code=code, capacity=table_data.capacity)
    session.add(table)
    session.commit()
    session.refresh(table)
    logger.info(f"Table {code} created for client {current_user.client_id}")
    return table


@router.patch("/tables/{table_id}")
def update_table(
    table_id: int,
    table_update: models.TableUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.TABLES_MANAGE))],
    session: Session = Depends(get_session),
) -> models.Table:
    table = session.exec(
        select(models.Table).where(
            models.Table.id == table_id,
            models.Table.client_id == current_user.client_id,
            models.Table.deleted_at == None,  # noqa: E711
        )
    ).first()
    if not table:
        raise HTTPException(status_code=404, detail="Table not found")

    update_data = table_update.model_dump(exclude_unset=True)
    _reject_nulls(update_data, ("table_code", "capacity", "status"))
    waiter_id = update_data.get("assigned_waiter_id")
    if waiter_id is not None:
        waiter = session.get(models.User, waiter_id)
        if waiter is None or waiter.client_id != current_user.client_id:
            raise HTTPException(status_code=400, detail="Waiter not found")

    for key, value in update_data.items():
        setattr(table, key, value)
    session.add(table)
    session.commit()
    session.refresh(table)
    return table


@router.delete("/tables/{table_id}")
def delete_table(
    table_id: int,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.TABLES_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    table = session.exec(
        select(models.Table).where(
            models.Table.id == table_id,
            models.Table.client_id == current_user.client_id,
            models.Table.deleted_at == None,  # noqa: E711
        )
    ).first()
    if not table:
        raise HTTPException(status_code=404, detail="Table not found")

    open_order = session.exec(
        select(models.Order).where(
            models.Order.table_id == table.id,
            models.Order.status.in_(OPEN_ORDER_STATUSES),
        )
    ).first()
    if open_order:
        raise HTTPException(status_code=409, detail="Table has open orders")

    table.deleted_at = utc_now()
    session.add(table)
    session.commit()
    return {"status": "deleted", "id": table_id}


def _table_code_candidates(raw: str) -> list[str]:
    """Codes a guest may type for the same table: "5", "T5", "t-5", "05"."""
    code = raw.strip().upper()
    number = code.removeprefix("T").lstrip("-")
    variants = [number]
    if number.isdigit():
        variants += [number.lstrip("0") or "0", number.zfill(2)]
    candidates = [code]
    for value in variants:
        candidates += [value, f"T{value}", f"T-{value}"]
    return list(dict.fromkeys(candidates))


@router.post("/tables/claim")
def claim_table(
    claim: models.TableClaim,
    tenant: Annotated[TenantContext, Depends(FeatureGate("qr_menu", ActionCategory.operational))],
    session: Session = Depends(get_session),
) -> dict:
    """Seat a guest at a table by its printed code, or join the order already running there."""
    if not claim.table_code.strip():
        raise HTTPException(status_code=400, detail="Table code is required")
    if claim.party_size is not None and claim.party_size < 1:
        raise HTTPException(status_code=400, detail="Party size must be at least 1")

    candidates = _table_code_candidates(claim.table_code)
    table = session.exec(
        select(models.Table)
        .where(
            models.Table.client_id == tenant.client_id,
            func.upper(models.Table.table_code).in_(candidates),
            models.Table.deleted_at == None,  # noqa: E711
        )
        .with_for_update()
    ).first()
    if not table:
        raise HTTPException(status_code=404, detail=f"Table {claim.table_code.strip()} not found")

    if table.status == models.TableStatus.dirty:
        raise HTTPException(status_code=409, detail="Table is being cleaned")

    active_order = session.exec(
        select(models.Order)
        .where(models.Order.table_id == table.id, models.Order.status.in_(OPEN_ORDER_STATUSES))
        .order_by(models.Order.created_at.desc())
    ).first()
    if active_order:
        return {
            "action": "join",
            "table": {"id": table.id, "table_code": table.table_code, "status": table.status.value},
            "active_order": {
                "id": active_order.id,
                "status": active_order.status.value,
                "version": active_order.version,
                "customer_name": active_order.customer_name,
                "grand_total_cents": active_order.grand_total_cents,
            },
        }

    if table.status != models.TableStatus.vacant:
        raise HTTPException(status_code=409, detail="Table is already occupied")

    table.status = models.TableStatus.active
    session.add(table)
    log_audit(
        session,
        tenant.client_id,
        models.AuditAction.table_claimed,
        actor_id=tenant.user.id if tenant.user else None,
        details={
            "table_id": table.id,
            "session_id": claim.session_id,
            "customer_name": claim.customer_name,
            "party_size": claim.party_size,
        },
    )
    session.commit()
    session.refresh(table)
    logger.info(f"Table {table.table_code} claimed for client {tenant.client_id}")

    events.publish_event(
        tenant.client_id,
        {"type": "table_claimed", "table_id": table.id, "table_code": table.table_code, "party_size": claim.party_size},
        table_id=table.id,
    )
    return {
        "action": "claimed",
        "table": {"id": table.id, "table_code": table.table_code, "status": table.status.value},
        "active_order": None,
    }


# ============ MENU ============

@router.get("/menu")
def get_customer_menu(
    tenant: Annotated[TenantContext, Depends(FeatureGate("qr_menu", ActionCategory.operational))],
    session: Session = Depends(get_session),
) -> dict:
    """Menu of the tenant resolved from the access code cookie (or staff session)."""
    client = session.get(models.Client, tenant.client_id)
    restaurant = session.exec(
        select(models.RestaurantSettings).where(models.RestaurantSettings.client_id == tenant.client_id)
    ).first()
    items = session.exec(
        select(models.MenuItem)
        .where(
            models.MenuItem.client_id == tenant.client_id,
            models.MenuItem.deleted_at == None,  # noqa: E711
            models.MenuItem.is_available == True,  # noqa: E712
        )
        .order_by(models.MenuItem.category, models.MenuItem.name)
    ).all()

    categories: dict[str, list[dict]] = {}
    for item in items:
        categories.setdefault(item.category or "Other", []).append(
            {
                "id": item.id,
                "name": item.name,
                "description": item.description,
                "price_cents": item.price_cents,
                "variants": item.variants or [],
                "modifiers": item.modifiers or [],
            }
        )

    return {
        "restaurant": {
            "name": (restaurant.business_name if restaurant and restaurant.business_name else client.name),
            "logo_filename": client.logo_filename,
            "currency": restaurant.currency if restaurant else "INR",
        },
        "categories": [{"name": name, "items": entries} for name, entries in categories.items()],
    }


@router.get("/menu/items")
def list_menu_items(
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.MENU_READ))],
    session: Session = Depends(get_session),
    category: str | None = None,
) -> list[models.MenuItem]:
    statement = select(models.MenuItem).where(
        models.MenuItem.client_id == current_user.client_id,
        models.MenuItem.deleted_at == None,  # noqa: E711
    )
    if category:
        statement = statement.where(models.MenuItem.category == category)
    return session.exec(statement.order_by(models.MenuItem.name)).all()


@router.post("/menu/items", status_code=status.HTTP_201_CREATED)
def create_menu_item(
    item_data: models.MenuItemCreate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.MENU_MANAGE))],
    _: Annotated[TenantContext, Depends(LimitGate("menu_items"))],
    session: Session = Depends(get_session),
) -> models.MenuItem:
    if item_data.price_cents < 0:
        raise HTTPException(status_code=400, detail="Price must not be negative")
    _validate_menu_options(item_data.variants, "variant")
    _validate_menu_options(item_data.modifiers, "modifier")

    item = models.MenuItem(client_id=current_user.client_id, **item_data.model_dump())
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@router.put("/menu/items/{item_id}")
def update_menu_item(
    item_id: int,
    item_update: models.MenuItemUpdate,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.MENU_MANAGE))],
    session: Session = Depends(get_session),
) -> models.MenuItem:
    item = session.exec(
        select(models.MenuItem).where(
            models.MenuItem.id == item_id,
            models.MenuItem.client_id == current_user.client_id,
            models.MenuItem.deleted_at == None,  # noqa: E711
        )
    ).first()
    if not item:
        raise HTTPException(status_code=404, detail="Menu item not found")

    update_data = item_update.model_dump(exclude_unset=True)
    _reject_nulls(update_data, ("name", "price_cents", "is_available", "variants", "modifiers"))
    if update_data.get("price_cents") is not None and update_data["price_cents"] < 0:
        raise HTTPException(status_code=400, detail="Price must not be negative")
    if update_data.get("variants") is not None:
        _validate_menu_options(update_data["variants"], "variant")
    if update_data.get("modifiers") is not None:
        _validate_menu_options(update_data["modifiers"], "modifier")

    for key, value in update_data.items():
        setattr(item, key, value)
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@router.delete("/menu/items/{item_id}")
def delete_menu_item(
    item_id: int,
    current_user: Annotated[models.User, Depends(PermissionChecker(Permissions.MENU_MANAGE))],
    session: Session = Depends(get_session),
) -> dict:
    item = session.exec(
        select(models.MenuItem).where(
            models.MenuItem.id == item_id,
            models.MenuItem.client_id == current_user.client_id,
            models.MenuItem.deleted_at == None,  # noqa: E711
        )
    ).first()
    if not item:
        raise HTTPException(status_code=404, detail="Menu item not found")

    item.deleted_at = utc_now()
    session.add(item)
    session.commit()
    return {"status": "deleted", "id": item_id}
