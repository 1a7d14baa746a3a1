"""
Saved books (wishlist).
"""

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field

from auth import Identity, current_user, get_store
from catalog import find_book, render_books
from database import Store, to_public
from errors import AlreadyExists, Forbidden, NotFound

SAVED_BOOK = "savedbook"

router = APIRouter(prefix="/saved-books", tags=["saved-books"])


class SavedBookCreate(BaseModel):
    book_id: str = Field(..., validation_alias=AliasChoices("book_id", "book", "bookId"))


def _render(store: Store, saved: list) -> list:
    books = {}
    ids = [s["book_id"] for s in saved]
    if ids:
        docs = store.get_documents("book", {"_id": {"$in": ids}})
        books = {d["_id"]: b for d, b in zip(docs, render_books(store, docs))}
    out = []
    for entry in saved:
        public = to_public(entry)
        public["book"] = books.get(entry["book_id"])
        out.append(public)
    return out


@router.get("")
def list_saved_books(identity: Identity = Depends(current_user), store: Store = Depends(get_store)):
    return _render(store, store.get_documents(SAVED_BOOK, {"user_id": identity.id}, sort=[("created_at", -1)]))


@router.post("", status_code=201)
def save_book(payload: SavedBookCreate, identity: Identity = Depends(current_user), store: Store = Depends(get_store)):
    book = find_book(store, payload.book_id)
    if not book:
        raise NotFound("Book not found")
    if store.find_one(SAVED_BOOK, {"user_id": identity.id, "book_id": book["_id"]}):
        raise AlreadyExists("Book already saved")
    new_id = store.create_document(SAVED_BOOK, {"user_id": identity.id, "book_id": book["_id"]})
    return _render(store, [store.get_document_by_id(SAVED_BOOK, new_id)])[0]


@router.delete("/{saved_id}")
def remove_saved_book(saved_id: str, identity: Identity = Depends(current_user), store: Store = Depends(get_store)):
    saved = store.get_document_by_id(SAVED_BOOK, saved_id)
    if not saved:
        raise NotFound("Saved book not found")
    if saved["user_id"] != identity.id:
        raise Forbidden("Not authorized to remove this saved book")
    store.delete_document(SAVED_BOOK, saved["_id"])
    return {"message": "Book removed from saved list successfully"}
