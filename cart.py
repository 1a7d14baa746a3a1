"""
Cart Engine

One cart per user. Line items keep the book price captured when the line
was created; later catalog changes never touch them. total_amount is always
recomputed from the items right before a write, and every write is a
compare-and-swap on the cart revision, made inside the user's lock.
"""

import logging
from contextlib import contextmanager
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterator, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Request
from pydantic import AliasChoices, BaseModel, Field
from pymongo import ReturnDocument
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from auth import Identity, current_user
from catalog import BOOK_SUMMARY, books_by_id, find_book
from database import Store, to_public, translate_errors, utcnow
from errors import AlreadyExists, Conflict, InvalidArgument, NotFound
from locks import KeyedLock

logger = logging.getLogger(__name__)

CART = "cart"
CENTS = Decimal("0.01")

router = APIRouter(prefix="/cart", tags=["cart"])


def compute_total(items: List[dict]) -> float:
    """Sum of price x quantity, exact to the cent"""
    total = sum((Decimal(str(i["price"])) * i["quantity"] for i in items), Decimal("0.00"))
    return float(total.quantize(CENTS, rounding=ROUND_HALF_UP))


def check_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidArgument("Quantity must be at least 1")
    return quantity


def cart_retry():
    # re-run the whole read-modify-write when another writer bumped the revision
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=0.5),
        retry=retry_if_exception_type(Conflict),
    )


class CartEngine:
    def __init__(self, store: Store, locks: KeyedLock):
        self.store = store
        self.locks = locks

    @contextmanager
    def locked(self, user_id: str) -> Iterator[None]:
        with self.locks.hold(f"cart:{user_id}"):
            yield

    # ------------------------- Reads --------------------------
    def find(self, user_id: str) -> Optional[dict]:
        return self.store.find_one(CART, {"user_id": user_id})

    def get_or_create(self, user_id: str) -> dict:
        now = utcnow()
        try:
            with translate_errors("Error retrieving cart"):
                return self.store[CART].find_one_and_update(
                    {"user_id": user_id},
                    {
                        "$setOnInsert": {
                            "items": [],
                            "total_amount": 0.0,
                            "revision": 0,
                            "created_at": now,
                            "updated_at": now,
                        }
                    },
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
        except AlreadyExists:
            # lost an upsert race against the unique user_id index
            cart = self.find(user_id)
            if cart is None:
                raise
            return cart

    def render(self, cart: dict) -> dict:
        """Public view of a cart with book details resolved"""
        books = books_by_id(self.store, (i["book_id"] for i in cart["items"]), BOOK_SUMMARY)
        out = to_public({k: v for k, v in cart.items() if k != "revision"})
        for item, raw in zip(out["items"], cart["items"]):
            book = books.get(raw["book_id"])
            item["book"] = to_public(book) if book else None
        return out

    def view(self, user_id: str) -> dict:
        return self.render(self.get_or_create(user_id))

    # ------------------------- Writes -------------------------
    def _commit(self, cart: dict, items: List[dict], session=None) -> dict:
        total = compute_total(items)
        now = utcnow()
        with translate_errors("Error saving cart"):
            res = self.store[CART].update_one(
                {"_id": cart["_id"], "revision": cart["revision"]},
                {"$set": {"items": items, "total_amount": total, "updated_at": now}, "$inc": {"revision": 1}},
                session=session,
            )
        if res.matched_count == 0:
            logger.warning("Cart %s changed underneath revision %s", cart["_id"], cart["revision"])
            raise Conflict(error=f"cart {cart['_id']} revision {cart['revision']} is stale")
        return {**cart, "items": items, "total_amount": total, "revision": cart["revision"] + 1, "updated_at": now}

    def _require(self, user_id: str) -> dict:
        cart = self.find(user_id)
        if not cart:
            raise NotFound("Cart not found")
        return cart

    @cart_retry()
    def _add(self, user_id: str, book: dict, quantity: int) -> dict:
        cart = self.get_or_create(user_id)
        items = [dict(i) for i in cart["items"]]
        for item in items:
            if item["book_id"] == book["_id"]:
                item["quantity"] += quantity
                break
        else:
            items.append(
                {
                    "_id": ObjectId(),
                    "book_id": book["_id"],
                    "quantity": quantity,
                    "price": float(book.get("price") or 0),
                }
            )
        return self._commit(cart, items)

    @cart_retry()
    def _set_quantity(self, user_id: str, item_id: str, quantity: int) -> dict:
        cart = self._require(user_id)
        items = [dict(i) for i in cart["items"]]
        item = next((i for i in items if str(i["_id"]) == item_id), None)
        if item is None:
            raise NotFound("Item not found in cart")
        item["quantity"] = quantity
        return self._commit(cart, items)

    @cart_retry()
    def _remove(self, user_id: str, item_id: str) -> dict:
        cart = self._require(user_id)
        items = [dict(i) for i in cart["items"] if str(i["_id"]) != item_id]
        return self._commit(cart, items)

    @cart_retry()
    def _clear(self, user_id: str) -> dict:
        return self._commit(self._require(user_id), [])

    def add_item(self, user_id: str, book_id: str, quantity: int = 1) -> dict:
        check_quantity(quantity)
        book = find_book(self.store, book_id)
        if not book:
            raise NotFound("Book not found")
        with self.locked(user_id):
            cart = self._add(user_id, book, quantity)
        logger.info("User %s added %s x book %s", user_id, quantity, book_id)
        return self.render(cart)

    def update_item(self, user_id: str, item_id: str, quantity) -> dict:
        check_quantity(quantity)
        with self.locked(user_id):
            cart = self._set_quantity(user_id, item_id, quantity)
        logger.info("User %s set item %s quantity to %s", user_id, item_id, quantity)
        return self.render(cart)

    def remove_item(self, user_id: str, item_id: str) -> dict:
        with self.locked(user_id):
            cart = self._remove(user_id, item_id)
        logger.info("User %s removed item %s", user_id, item_id)
        return self.render(cart)

    def clear(self, user_id: str) -> dict:
        with self.locked(user_id):
            cart = self._clear(user_id)
        logger.info("User %s cleared cart", user_id)
        return self.render(cart)

    def drain(self, cart: dict, session=None) -> dict:
        """Empty a cart loaded by the caller; Conflict if it changed since"""
        return self._commit(cart, [], session=session)


# ------------------------- Endpoints --------------------------
class CartAdd(BaseModel):
    book_id: str = Field(..., validation_alias=AliasChoices("book_id", "bookId"))
    quantity: int = 1


class CartUpdate(BaseModel):
    quantity: Optional[int] = None


def get_cart_engine(request: Request) -> CartEngine:
    return request.app.state.carts


@router.get("")
def get_cart(identity: Identity = Depends(current_user), carts: CartEngine = Depends(get_cart_engine)):
    return carts.view(identity.id)


@router.post("/add")
def add_to_cart(
    payload: CartAdd, identity: Identity = Depends(current_user), carts: CartEngine = Depends(get_cart_engine)
):
    return carts.add_item(identity.id, payload.book_id, payload.quantity)


@router.put("/update/{item_id}")
def update_cart_item(
    item_id: str,
    payload: CartUpdate,
    identity: Identity = Depends(current_user),
    carts: CartEngine = Depends(get_cart_engine),
):
    return carts.update_item(identity.id, item_id, payload.quantity)


@router.delete("/remove/{item_id}")
def remove_cart_item(
    item_id: str, identity: Identity = Depends(current_user), carts: CartEngine = Depends(get_cart_engine)
):
    return carts.remove_item(identity.id, item_id)


@router.delete("/clear")
def clear_cart(identity: Identity = Depends(current_user), carts: CartEngine = Depends(get_cart_engine)):
    return {"message": "Cart cleared successfully", "cart": carts.clear(identity.id)}
