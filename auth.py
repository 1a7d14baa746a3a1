"""
Identity: registration, login, bearer tokens and the admin gate.
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

from config import Settings
from database import Store, to_public, utcnow
from errors import AlreadyExists, Forbidden, Unauthorized
from schemas import User

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
# Use pbkdf2_sha256 to avoid bcrypt backend issues in some environments
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/auth", tags=["auth"])


class Identity(BaseModel):
    id: str
    username: str
    is_admin: bool = False


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: str
    password: str


# ------------------------- Dependencies -----------------------
def get_store(request: Request) -> Store:
    return request.app.state.store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> Identity:
    if credentials is None:
        raise Unauthorized("No token, authorization denied")
    try:
        payload = jwt.decode(credentials.credentials, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        raise Unauthorized("Token is not valid", str(e)) from e

    user = store.get_document_by_id("user", payload.get("sub"))
    if not user:
        raise Unauthorized("Token is not valid", "User no longer exists")
    return Identity(id=str(user["_id"]), username=user["username"], is_admin=user.get("is_admin", False))


def require_admin(identity: Identity = Depends(current_user)) -> Identity:
    if not identity.is_admin:
        raise Forbidden("Access denied. Admin rights required for this operation.")
    return identity


# ------------------------- Helpers ----------------------------
def create_access_token(data: dict, settings: Settings) -> str:
    to_encode = data.copy()
    to_encode["exp"] = utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def public_user(doc: dict) -> dict:
    doc = {k: v for k, v in doc.items() if k != "password_hash"}
    return to_public(doc)


def create_user(store: Store, username: str, email: str, password: str, is_admin: bool = False) -> dict:
    email = email.lower()
    if store.find_one("user", {"$or": [{"email": email}, {"username": username}]}):
        raise AlreadyExists("User already exists")
    user = User(
        username=username,
        email=email,
        password_hash=pwd_context.hash(password),
        is_admin=is_admin,
    )
    new_id = store.create_document("user", user)
    logger.info("Created user %s (admin=%s)", new_id, is_admin)
    return store.get_document_by_id("user", new_id)


def ensure_admin_exists(store: Store, settings: Settings) -> None:
    """Seed the configured admin account if the store has no admin yet"""
    if not (settings.admin_email and settings.admin_password):
        return
    if store.count("user", {"is_admin": True}) > 0:
        return
    create_user(store, "admin", settings.admin_email, settings.admin_password, is_admin=True)
    logger.info("Seeded default admin %s", settings.admin_email)


def _token_response(user: dict, settings: Settings) -> dict:
    token = create_access_token({"sub": str(user["_id"])}, settings)
    return {"token": token, "token_type": "bearer", "user": public_user(user)}


# ------------------------- Endpoints --------------------------
@router.post("/register", status_code=201)
def register(
    payload: RegisterRequest,
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    user = create_user(store, payload.username, payload.email, payload.password)
    return _token_response(user, settings)


@router.post("/login")
def login(
    payload: LoginRequest,
    store: Store = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
):
    user = store.find_one("user", {"email": payload.email.lower()})
    if not user or not pwd_context.verify(payload.password, user.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return _token_response(user, settings)


@router.get("/me")
def me(identity: Identity = Depends(current_user), store: Store = Depends(get_store)):
    return public_user(store.get_document_by_id("user", identity.id))
