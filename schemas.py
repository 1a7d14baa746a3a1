"""
Database Schemas

Pydantic models describing the documents stored in MongoDB.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Book -> "book" collection
- Category -> "category" collection
- Review -> "review" collection
Carts, orders and saved books are written by their engines directly
("cart", "order", "savedbook").
"""

from datetime import date
from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, EmailStr, Field

PaymentMethod = Literal["credit_card", "paypal", "stripe"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
# "cancelled" is stored but cannot be assigned through a status update
ASSIGNABLE_STATUSES = ("pending", "processing", "shipped", "delivered")


class User(BaseModel):
    username: str = Field(..., min_length=1, description="Unique username")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="pbkdf2 hash of the password")
    is_admin: bool = Field(False, description="Whether the user is an admin")


class Book(BaseModel):
    title: str = Field(..., min_length=1, description="Book title")
    author: str = Field(..., min_length=1, description="Author name")
    description: str = Field(..., min_length=1, description="Description")
    cover_image: Optional[str] = Field(
        None, validation_alias=AliasChoices("cover_image", "coverImage"), description="Cover image URL"
    )
    publish_date: Optional[date] = Field(
        None, validation_alias=AliasChoices("publish_date", "publishDate"), description="Publication date"
    )
    price: float = Field(0, ge=0, description="Current catalog price")
    categories: List[str] = Field(default_factory=list, description="Category ids")


class Category(BaseModel):
    name: str = Field(..., description="Category name, unique ignoring case")
    description: Optional[str] = Field(None, description="Description")


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1, validation_alias=AliasChoices("zip_code", "zipCode"))
    country: str = Field("USA", min_length=1)


class Review(BaseModel):
    book_id: str = Field(..., validation_alias=AliasChoices("book_id", "book", "bookId"))
    rating: float = Field(..., ge=1, le=5, description="Rating from 1-5")
    comment: Optional[str] = Field(None, description="Review comments")
