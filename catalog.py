"""
Catalog: books and categories.

Categories cannot be deleted while a book still references them.
"""

import logging
import re
from datetime import datetime, time
from typing import Dict, Iterable, List, Optional

from bson import ObjectId
from fastapi import APIRouter, Depends

from auth import Identity, get_store, require_admin
from database import Store, object_id, to_public
from errors import AlreadyExists, InvalidArgument, NotFound
from schemas import Book, Category

logger = logging.getLogger(__name__)

BOOK_SUMMARY = {"title": 1, "author": 1, "cover_image": 1, "price": 1}

books_router = APIRouter(prefix="/books", tags=["books"])
categories_router = APIRouter(prefix="/categories", tags=["categories"])


# ------------------------- Lookups ----------------------------
def find_book(store: Store, book_id) -> Optional[dict]:
    return store.get_document_by_id("book", book_id)


def books_by_id(store: Store, ids: Iterable[ObjectId], projection: Optional[dict] = None) -> Dict[ObjectId, dict]:
    """Fetch books for a set of ids in one query, keyed by _id"""
    wanted = list({i for i in ids if i is not None})
    if not wanted:
        return {}
    docs = store.get_documents("book", {"_id": {"$in": wanted}}, projection=projection)
    return {d["_id"]: d for d in docs}


def render_books(store: Store, books: List[dict]) -> List[dict]:
    ids = {c for b in books for c in b.get("categories", [])}
    found = {}
    if ids:
        found = {c["_id"]: c for c in store.get_documents("category", {"_id": {"$in": list(ids)}})}
    out = []
    for b in books:
        b = dict(b)
        b["categories"] = [found[c] for c in b.get("categories", []) if c in found]
        out.append(to_public(b))
    return out


def _book_document(payload: Book) -> dict:
    data = payload.model_dump()
    category_ids = []
    for raw in data["categories"]:
        oid = object_id(raw)
        if oid is None:
            raise InvalidArgument("Invalid category id", raw)
        category_ids.append(oid)
    data["categories"] = category_ids
    if data["publish_date"] is not None:
        # BSON has no date-only type
        data["publish_date"] = datetime.combine(data["publish_date"], time())
    return data


def top_selling_books(store: Store, limit: int = 5) -> List[dict]:
    """Books ranked by units sold across non-cancelled orders"""
    pipeline = [
        {"$match": {"status": {"$ne": "cancelled"}}},
        {"$unwind": "$items"},
        {"$group": {"_id": "$items.book_id", "units_sold": {"$sum": "$items.quantity"}}},
        {"$sort": {"units_sold": -1}},
        {"$limit": limit},
    ]
    ranked = store.aggregate("order", pipeline)
    books = books_by_id(store, (r["_id"] for r in ranked))
    result = []
    for r in ranked:
        book = books.get(r["_id"])
        if book is None:
            continue
        entry = to_public(book)
        entry["units_sold"] = r["units_sold"]
        result.append(entry)
    return result


# ------------------------- Books ------------------------------
@books_router.get("")
def list_books(category: Optional[str] = None, store: Store = Depends(get_store)):
    query = {}
    if category:
        oid = object_id(category)
        if oid is None:
            return []
        query["categories"] = oid
    return render_books(store, store.get_documents("book", query, sort=[("created_at", -1)]))


@books_router.get("/stats/top-selling")
def get_top_selling(store: Store = Depends(get_store), admin: Identity = Depends(require_admin)):
    return top_selling_books(store)


@books_router.get("/{book_id}")
def get_book(book_id: str, store: Store = Depends(get_store)):
    doc = find_book(store, book_id)
    if not doc:
        raise NotFound("Book not found")
    return render_books(store, [doc])[0]


@books_router.post("", status_code=201)
def create_book(payload: Book, store: Store = Depends(get_store), admin: Identity = Depends(require_admin)):
    new_id = store.create_document("book", _book_document(payload))
    logger.info("Book %s created by %s", new_id, admin.id)
    return render_books(store, [store.get_document_by_id("book", new_id)])[0]


@books_router.put("/{book_id}")
def update_book(
    book_id: str, payload: Book, store: Store = Depends(get_store), admin: Identity = Depends(require_admin)
):
    if not store.update_document("book", book_id, _book_document(payload)):
        raise NotFound("Book not found")
    logger.info("Book %s updated by %s", book_id, admin.id)
    return render_books(store, [store.get_document_by_id("book", book_id)])[0]


@books_router.delete("/{book_id}")
def delete_book(book_id: str, store: Store = Depends(get_store), admin: Identity = Depends(require_admin)):
    book = find_book(store, book_id)
    if not book:
        raise NotFound("Book not found")
    store.delete_document("book", book_id)
    logger.info("Book %s deleted by %s", book_id, admin.id)
    return {
        "success": True,
        "message": "Book deleted successfully",
        "deleted_book": {"id": str(book["_id"]), "title": book["title"]},
    }


# ------------------------- Categories -------------------------
def _name_taken(store: Store, name: str, exclude: Optional[ObjectId] = None) -> bool:
    query = {"name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}}
    if exclude is not None:
        query["_id"] = {"$ne": exclude}
    return store.find_one("category", query) is not None


def _validated_name(payload: Category) -> str:
    name = payload.name.strip()
    if not name:
        raise InvalidArgument("Category name is required")
    return name


@categories_router.get("")
def list_categories(admin: bool = False, store: Store = Depends(get_store)):
    categories = store.get_documents("category")
    if not admin:
        return to_public(categories)
    out = []
    for category in categories:
        entry = to_public(category)
        entry["book_count"] = store.count("book", {"categories": category["_id"]})
        out.append(entry)
    return out


@categories_router.get("/{category_id}")
def get_category(category_id: str, store: Store = Depends(get_store)):
    doc = store.get_document_by_id("category", category_id)
    if not doc:
        raise NotFound("Category not found")
    return to_public(doc)


@categories_router.post("", status_code=201)
def create_category(payload: Category, store: Store = Depends(get_store), admin: Identity = Depends(require_admin)):
    name = _validated_name(payload)
    if _name_taken(store, name):
        raise AlreadyExists("Category with this name already exists")
    new_id = store.create_document("category", {"name": name, "description": payload.description})
    return to_public(store.get_document_by_id("category", new_id))


@categories_router.put("/{category_id}")
def update_category(
    category_id: str, payload: Category, store: Store = Depends(get_store), admin: Identity = Depends(require_admin)
):
    name = _validated_name(payload)
    oid = object_id(category_id)
    if oid is None:
        raise NotFound("Category not found")
    if _name_taken(store, name, exclude=oid):
        raise AlreadyExists("Another category with this name already exists")
    if not store.update_document("category", oid, {"name": name, "description": payload.description}):
        raise NotFound("Category not found")
    return to_public(store.get_document_by_id("category", oid))


@categories_router.delete("/{category_id}")
def delete_category(category_id: str, store: Store = Depends(get_store), admin: Identity = Depends(require_admin)):
    oid = object_id(category_id)
    if oid is None:
        raise NotFound("Category not found")
    in_use = store.count("book", {"categories": oid})
    if in_use > 0:
        raise InvalidArgument(
            f"Cannot delete this category as it is used by {in_use} books. Please reassign those books first."
        )
    category = store.get_document_by_id("category", oid)
    if not category or not store.delete_document("category", oid):
        raise NotFound("Category not found")
    logger.info("Category %s deleted by %s", category_id, admin.id)
    return {
        "message": "Category deleted successfully",
        "deleted_category": {"id": category_id, "name": category["name"]},
    }
