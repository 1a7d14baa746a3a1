"""
Order Engine

Checkout turns the user's cart into an immutable order and drains the cart.
The two writes either share a MongoDB transaction (USE_TRANSACTIONS) or run
as a saga: insert the order, drain the cart, and delete the order again if
the cart cannot be drained.
"""

import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends, Request
from pydantic import AliasChoices, BaseModel, Field
from pymongo import ReturnDocument
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from auth import Identity, current_user
from cart import CartEngine, compute_total
from catalog import BOOK_SUMMARY, books_by_id
from database import Store, object_id, to_public, translate_errors, utcnow
from errors import BookstoreError, Conflict, Internal, InvalidArgument, InvalidState, NotFound, Timeout
from schemas import ASSIGNABLE_STATUSES, Address, PaymentMethod

logger = logging.getLogger(__name__)

ORDER = "order"

router = APIRouter(prefix="/orders", tags=["orders"])


class OrderEngine:
    def __init__(self, store: Store, carts: CartEngine):
        self.store = store
        self.carts = carts

    # ------------------------- Checkout -----------------------
    def place_order(
        self,
        user_id: str,
        shipping_address: dict,
        payment_method: str,
        payment_details: Optional[dict] = None,
    ) -> dict:
        with self.carts.locked(user_id):
            cart = self.carts.find(user_id)
            if not cart or not cart["items"]:
                raise InvalidState("Cart is empty")

            items = [
                {"_id": ObjectId(), "book_id": i["book_id"], "quantity": i["quantity"], "price": i["price"]}
                for i in cart["items"]
            ]
            total = compute_total(items)
            if total != cart["total_amount"]:
                logger.error(
                    "Cart %s stores total %s but its items sum to %s", cart["_id"], cart["total_amount"], total
                )
                raise Internal(
                    "Cart total is inconsistent with its items",
                    f"stored {cart['total_amount']}, computed {total}",
                )

            order = {
                "user_id": user_id,
                "items": items,
                "total_amount": cart["total_amount"],
                "shipping_address": shipping_address,
                "payment_method": payment_method,
                "payment_details": payment_details,
                "status": "pending",
                "tracking_number": "",
            }
            if self.store.use_transactions:
                order_id = self._place_in_transaction(cart, order)
            else:
                order_id = self._place_with_compensation(cart, order)

        logger.info("Order %s placed by user %s for %s", order_id, user_id, order["total_amount"])
        return self.render(self.store.get_document_by_id(ORDER, order_id))

    def _place_in_transaction(self, cart: dict, order: dict) -> ObjectId:
        def write(session):
            order_id = self.store.create_document(ORDER, order, session=session)
            self.carts.drain(cart, session=session)
            return order_id

        return self.store.run_in_transaction(write)

    def _place_with_compensation(self, cart: dict, order: dict) -> ObjectId:
        order_id = self.store.create_document(ORDER, order)
        try:
            self._drain(cart)
        except BookstoreError as e:
            if self._drained(cart):
                # the last write landed even though its reply was lost
                logger.warning(
                    "Drain of cart %s reported %s but the cart is empty; keeping order %s", cart["_id"], e, order_id
                )
                return order_id
            logger.error("Could not drain cart %s after order %s: %s; removing order", cart["_id"], order_id, e)
            self.store.delete_document(ORDER, order_id)
            raise
        return order_id

    def _drained(self, cart: dict) -> bool:
        """True if the cart is empty at exactly the revision our drain would produce"""
        current = self.carts.find(cart["user_id"])
        return bool(current) and not current["items"] and current["revision"] == cart["revision"] + 1

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        retry=retry_if_exception_type((Internal, Timeout)),
    )
    def _drain(self, cart: dict) -> None:
        try:
            self.carts.drain(cart)
        except Conflict:
            if self._drained(cart):
                # an earlier attempt reached the server
                return
            raise

    # ------------------------- Status -------------------------
    def update_status(self, order_id: str, status: Optional[str]) -> dict:
        if status not in ASSIGNABLE_STATUSES:
            raise InvalidArgument("Invalid status", f"status must be one of {', '.join(ASSIGNABLE_STATUSES)}")
        oid = object_id(order_id)
        if oid is None:
            raise NotFound("Order not found")
        with translate_errors("Error updating order status"):
            doc = self.store[ORDER].find_one_and_update(
                {"_id": oid},
                {"$set": {"status": status, "updated_at": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
        if not doc:
            raise NotFound("Order not found")
        logger.info("Order %s moved to %s", order_id, status)
        return self.render(doc)

    # ------------------------- Queries ------------------------
    def list_orders(self, identity: Identity) -> List[dict]:
        query = {} if identity.is_admin else {"user_id": identity.id}
        orders = self.store.get_documents(ORDER, query, sort=[("created_at", -1)])
        return self.render_many(orders, include_user=identity.is_admin)

    def get_order(self, user_id: str, order_id: str) -> dict:
        oid = object_id(order_id)
        doc = self.store.find_one(ORDER, {"_id": oid, "user_id": user_id}) if oid else None
        if not doc:
            raise NotFound("Order not found")
        return self.render(doc)

    def render(self, order: dict) -> dict:
        return self.render_many([order])[0]

    def render_many(self, orders: List[dict], include_user: bool = False) -> List[dict]:
        books = books_by_id(self.store, (i["book_id"] for o in orders for i in o["items"]), BOOK_SUMMARY)
        users: Dict[str, dict] = {}
        if include_user:
            ids = [oid for oid in (object_id(o["user_id"]) for o in orders) if oid is not None]
            if ids:
                found = self.store.get_documents("user", {"_id": {"$in": ids}}, projection={"username": 1, "email": 1})
                users = {str(u["_id"]): to_public(u) for u in found}

        out = []
        for order in orders:
            public = to_public(order)
            for item, raw in zip(public["items"], order["items"]):
                book = books.get(raw["book_id"])
                item["book"] = to_public(book) if book else None
            if include_user:
                public["user"] = users.get(order["user_id"])
            out.append(public)
        return out


# ------------------------- Endpoints --------------------------
class OrderCreate(BaseModel):
    shipping_address: Address = Field(..., validation_alias=AliasChoices("shipping_address", "shippingAddress"))
    payment_method: PaymentMethod = Field(..., validation_alias=AliasChoices("payment_method", "paymentMethod"))
    payment_details: Optional[Dict[str, Any]] = Field(
        None, validation_alias=AliasChoices("payment_details", "paymentDetails")
    )


class OrderStatusUpdate(BaseModel):
    status: Optional[str] = None


def get_order_engine(request: Request) -> OrderEngine:
    return request.app.state.orders


@router.get("")
def list_orders(identity: Identity = Depends(current_user), orders: OrderEngine = Depends(get_order_engine)):
    return orders.list_orders(identity)


@router.get("/{order_id}")
def get_order(order_id: str, identity: Identity = Depends(current_user), orders: OrderEngine = Depends(get_order_engine)):
    return orders.get_order(identity.id, order_id)


@router.post("", status_code=201)
def create_order(
    payload: OrderCreate, identity: Identity = Depends(current_user), orders: OrderEngine = Depends(get_order_engine)
):
    return orders.place_order(
        identity.id,
        payload.shipping_address.model_dump(),
        payload.payment_method,
        payload.payment_details,
    )


@router.put("/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    identity: Identity = Depends(current_user),
    orders: OrderEngine = Depends(get_order_engine),
):
    return orders.update_status(order_id, payload.status)
