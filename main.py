import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import admin
import auth
import cart
import catalog
import orders
import reviews
import saved_books
from config import Settings, get_settings
from database import Store
from errors import BookstoreError
from locks import KeyedLock

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None) -> FastAPI:
    """Build the API. The store is opened on startup and closed on shutdown."""
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = store or Store.from_settings(settings)
        db.open()
        auth.ensure_admin_exists(db, settings)
        carts = cart.CartEngine(db, KeyedLock(timeout=settings.cart_lock_timeout))
        app.state.store = db
        app.state.carts = carts
        app.state.orders = orders.OrderEngine(db, carts)
        logger.info("Bookstore API ready (transactions=%s)", db.use_transactions)
        try:
            yield
        finally:
            db.close()

    app = FastAPI(title="Bookstore API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------- Error Rendering --------------------
    @app.exception_handler(BookstoreError)
    async def bookstore_error_handler(request: Request, exc: BookstoreError):
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request", "error": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": exc.detail, "error": "HTTPError"},
            headers=getattr(exc, "headers", None),
        )

    # ------------------------- Basic Routes -----------------------
    @app.get("/")
    def root():
        return {"message": "Bookstore API"}

    @app.get("/health")
    def health(request: Request):
        db: Store = request.app.state.store
        response = {"backend": "running", "database": "unavailable", "collections": []}
        try:
            response["collections"] = db.list_collections()[:10]
            response["database"] = "connected"
        except BookstoreError as e:
            response["database"] = f"error: {e.error}"[:80]
        return response

    app.include_router(auth.router)
    app.include_router(catalog.books_router)
    app.include_router(catalog.categories_router)
    app.include_router(reviews.router)
    app.include_router(saved_books.router)
    app.include_router(cart.router)
    app.include_router(orders.router)
    app.include_router(admin.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
