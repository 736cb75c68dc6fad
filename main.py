from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

import database
import settings
from admin import router as admin_router
from auth import router as auth_router
from cart import router as cart_router
from errors import register_error_handlers
from log import configure_logging, log_requests
from orders import router as orders_router
from products import router as products_router
from ratelimit import api_limiter, auth_limiter
from reviews import router as reviews_router
from wishlist import router as wishlist_router

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    else:
        logger.warning("database_not_configured")
    logger.info("startup", env=settings.APP_ENV, port=settings.PORT)
    yield


app = FastAPI(title="Marketly API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)
app.middleware("http")(log_requests)
register_error_handlers(app)

rate_limited = [Depends(api_limiter)]

app.include_router(auth_router, dependencies=rate_limited + [Depends(auth_limiter)])
# wishlist before products: /api/products/{product_id} would otherwise swallow /api/products/wishlist
app.include_router(wishlist_router, dependencies=rate_limited)
app.include_router(products_router, dependencies=rate_limited)
app.include_router(cart_router, dependencies=rate_limited)
app.include_router(orders_router, dependencies=rate_limited)
app.include_router(reviews_router, dependencies=rate_limited)
app.include_router(admin_router, dependencies=rate_limited)


# Routes
@app.get("/")
def read_root():
    return {"success": True, "message": "Marketly API"}


@app.get("/api/health")
def health():
    return {"success": True, "status": "OK", "environment": settings.APP_ENV}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_url"] = "✅ Set"
            response["database_name"] = database.db.name
            response["collections"] = database.db.list_collection_names()
        else:
            response["database"] = "❌ Not Available"
    except Exception as e:
        logger.warning("database_check_failed", error=str(e))
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
