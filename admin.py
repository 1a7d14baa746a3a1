"""
Admin dashboard and user management. Every route requires an admin.
"""

import calendar
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field

from auth import Identity, create_user, get_store, public_user, require_admin
from database import Store, object_id, to_public, translate_errors, utcnow
from errors import InvalidArgument, NotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ------------------------- Dashboard Widgets ------------------
def total_revenue(store: Store) -> float:
    # revenue sum of total_amount for orders with status not cancelled
    pipeline = [
        {"$match": {"status": {"$ne": "cancelled"}}},
        {"$group": {"_id": None, "sum": {"$sum": "$total_amount"}}},
    ]
    agg = store.aggregate("order", pipeline)
    return round(float(agg[0]["sum"]), 2) if agg else 0.0


def last_months(now: datetime, count: int) -> List[tuple]:
    """(year, month) pairs for the `count` calendar months ending at `now`, oldest first"""
    year, month = now.year, now.month
    months = []
    for _ in range(count):
        months.append((year, month))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(months))


def monthly_sales(store: Store, now: Optional[datetime] = None, months: int = 6) -> List[dict]:
    pipeline = [
        {"$match": {"status": {"$ne": "cancelled"}}},
        {
            "$group": {
                "_id": {"year": {"$year": "$created_at"}, "month": {"$month": "$created_at"}},
                "revenue": {"$sum": "$total_amount"},
                "count": {"$sum": 1},
            }
        },
    ]
    grouped = {(g["_id"]["year"], g["_id"]["month"]): g for g in store.aggregate("order", pipeline)}
    sales = []
    for year, month in last_months(now or utcnow(), months):
        bucket = grouped.get((year, month))
        sales.append(
            {
                "month": calendar.month_name[month],
                "year": year,
                "revenue": round(float(bucket["revenue"]), 2) if bucket else 0.0,
                "count": bucket["count"] if bucket else 0,
            }
        )
    return sales


def category_stats(store: Store, limit: int = 5) -> List[dict]:
    pipeline = [
        {"$unwind": "$categories"},
        {"$group": {"_id": "$categories", "count": {"$sum": 1}}},
        {"$sort": {"count": -1}},
        {"$limit": limit},
    ]
    stats = store.aggregate("book", pipeline)
    names = {}
    if stats:
        found = store.get_documents("category", {"_id": {"$in": [s["_id"] for s in stats]}})
        names = {c["_id"]: c["name"] for c in found}
    return [{"name": names.get(s["_id"], "Unknown"), "count": s["count"]} for s in stats]


def recent_orders(store: Store, limit: int = 5) -> List[dict]:
    orders = store.get_documents("order", sort=[("created_at", -1)], limit=limit)
    ids = [oid for oid in (object_id(o["user_id"]) for o in orders) if oid is not None]
    users = {}
    if ids:
        found = store.get_documents("user", {"_id": {"$in": ids}}, projection={"username": 1})
        users = {str(u["_id"]): to_public(u) for u in found}
    out = []
    for order in orders:
        public = to_public(order)
        public["user"] = users.get(order["user_id"])
        out.append(public)
    return out


@router.get("/dashboard")
def get_dashboard(store: Store = Depends(get_store)):
    return {
        "stats": {
            "books": store.count("book"),
            "users": store.count("user"),
            "orders": store.count("order"),
            "revenue": total_revenue(store),
        },
        "monthly_sales": monthly_sales(store),
        "categories": category_stats(store),
        "recent_orders": recent_orders(store),
    }


# ------------------------- Users ------------------------------
class AdminUserCreate(BaseModel):
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    is_admin: bool = False


class AdminUserUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    is_admin: Optional[bool] = None


def _is_only_admin(store: Store, user: dict) -> bool:
    return user.get("is_admin", False) and store.count("user", {"is_admin": True}) <= 1


@router.get("/users")
def list_users(store: Store = Depends(get_store)):
    return [public_user(u) for u in store.get_documents("user", sort=[("created_at", -1)])]


@router.get("/users/{user_id}")
def get_user(user_id: str, store: Store = Depends(get_store)):
    user = store.get_document_by_id("user", user_id)
    if not user:
        raise NotFound("User not found")
    return public_user(user)


@router.post("/users", status_code=201)
def create_admin_user(payload: AdminUserCreate, store: Store = Depends(get_store)):
    user = create_user(store, payload.username, payload.email, payload.password, is_admin=payload.is_admin)
    return public_user(user)


@router.put("/users/{user_id}")
def update_user(user_id: str, payload: AdminUserUpdate, store: Store = Depends(get_store)):
    user = store.get_document_by_id("user", user_id)
    if not user:
        raise NotFound("User not found")
    if payload.is_admin is False and _is_only_admin(store, user):
        raise InvalidArgument("Cannot remove the only admin account")
    changes = payload.model_dump(exclude_none=True)
    if "email" in changes:
        changes["email"] = changes["email"].lower()
    if changes:
        store.update_document("user", user["_id"], changes)
    return public_user(store.get_document_by_id("user", user["_id"]))


@router.delete("/users/{user_id}")
def delete_user(user_id: str, store: Store = Depends(get_store), admin: Identity = Depends(require_admin)):
    user = store.get_document_by_id("user", user_id)
    if not user:
        raise NotFound("User not found")
    if _is_only_admin(store, user):
        raise InvalidArgument("Cannot delete the only admin account")
    if str(user["_id"]) == admin.id:
        raise InvalidArgument("Cannot delete your own account")

    owner = str(user["_id"])
    # cart and wishlist go before the user; orders and reviews stay for the record
    with translate_errors("Error removing user data"):
        store["cart"].delete_many({"user_id": owner})
        store["savedbook"].delete_many({"user_id": owner})
    store.delete_document("user", user["_id"])
    logger.info("User %s deleted by %s", owner, admin.id)
    return {"message": "User deleted successfully"}
