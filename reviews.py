"""
Book reviews. One review per user and book; only the author may change it.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth import Identity, current_user, get_store
from catalog import books_by_id, find_book
from database import Store, object_id, to_public
from errors import AlreadyExists, Forbidden, NotFound
from schemas import Review

logger = logging.getLogger(__name__)

REVIEW = "review"

router = APIRouter(prefix="/reviews", tags=["reviews"])


class ReviewUpdate(BaseModel):
    rating: Optional[float] = Field(None, ge=1, le=5)
    comment: Optional[str] = None


def _render(store: Store, reviews: List[dict]) -> List[dict]:
    books = books_by_id(store, (r["book_id"] for r in reviews), {"title": 1})
    user_ids = [oid for oid in (object_id(r["user_id"]) for r in reviews) if oid is not None]
    users = {}
    if user_ids:
        found = store.get_documents("user", {"_id": {"$in": user_ids}}, projection={"username": 1})
        users = {str(u["_id"]): to_public(u) for u in found}
    out = []
    for review in reviews:
        public = to_public(review)
        book = books.get(review["book_id"])
        public["book"] = to_public(book) if book else None
        public["user"] = users.get(review["user_id"])
        out.append(public)
    return out


def _owned(store: Store, review_id: str, identity: Identity, action: str) -> dict:
    review = store.get_document_by_id(REVIEW, review_id)
    if not review:
        raise NotFound("Review not found")
    if review["user_id"] != identity.id:
        raise Forbidden(f"Not authorized to {action} this review")
    return review


@router.get("")
def list_reviews(book: Optional[str] = None, store: Store = Depends(get_store)):
    query = {}
    if book:
        oid = object_id(book)
        if oid is None:
            return []
        query["book_id"] = oid
    return _render(store, store.get_documents(REVIEW, query, sort=[("created_at", -1)]))


@router.get("/{review_id}")
def get_review(review_id: str, store: Store = Depends(get_store)):
    review = store.get_document_by_id(REVIEW, review_id)
    if not review:
        raise NotFound("Review not found")
    return _render(store, [review])[0]


@router.post("", status_code=201)
def create_review(payload: Review, identity: Identity = Depends(current_user), store: Store = Depends(get_store)):
    book = find_book(store, payload.book_id)
    if not book:
        raise NotFound("Book not found")
    if store.find_one(REVIEW, {"book_id": book["_id"], "user_id": identity.id}):
        raise AlreadyExists("You have already reviewed this book")
    new_id = store.create_document(
        REVIEW,
        {"book_id": book["_id"], "user_id": identity.id, "rating": payload.rating, "comment": payload.comment},
    )
    logger.info("User %s reviewed book %s", identity.id, payload.book_id)
    return _render(store, [store.get_document_by_id(REVIEW, new_id)])[0]


@router.put("/{review_id}")
def update_review(
    review_id: str,
    payload: ReviewUpdate,
    identity: Identity = Depends(current_user),
    store: Store = Depends(get_store),
):
    review = _owned(store, review_id, identity, "update")
    changes = payload.model_dump(exclude_none=True)
    if changes:
        store.update_document(REVIEW, review["_id"], changes)
    return _render(store, [store.get_document_by_id(REVIEW, review["_id"])])[0]


@router.delete("/{review_id}")
def delete_review(review_id: str, identity: Identity = Depends(current_user), store: Store = Depends(get_store)):
    review = _owned(store, review_id, identity, "delete")
    store.delete_document(REVIEW, review["_id"])
    return {"message": "Review deleted successfully"}
