from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi

from mongosnap.controllers import (
    auth_router,
    bug_reports_router,
    connections_router,
    contacts_router,
    queries_router,
    twofactor_router,
)
from mongosnap.core.config import CORS_ORIGINS, LOG_LEVEL
from mongosnap.core.exceptions import register_exception_handlers
from mongosnap.core.logging import setup_logging
from mongosnap.db.database import lifespan
from mongosnap.services.database_manager import database_manager

setup_logging(LOG_LEVEL)

app = FastAPI(title="MongoSnap API", lifespan=lifespan)

def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title="MongoSnap API",
        version="1.0.0",
        description="""
API documentation for MongoSnap.

**To use protected endpoints:**

1. Call `/api/auth/signup` to create a new user
2. Call `/api/auth/login` to get `access_token` (the refresh token is set as an httpOnly cookie)
3. Click **Authorize** button above
4. Enter:
   - `Bearer {your_access_token}`
   - or just `{your_access_token}`
5. State changing account endpoints also expect the `X-CSRF-Token` header from the login response
""",
        routes=app.routes,
    )
    # Override the OAuth2PasswordBearer scheme to use Bearer token
    openapi_schema["components"]["securitySchemes"] = {
        "OAuth2PasswordBearer": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Enter your JWT access_token. Get it from /api/auth/login endpoint. Format: Bearer {token} or just {token}"
        }
    }
    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

app.include_router(auth_router.router)
app.include_router(twofactor_router.router)
app.include_router(connections_router.router)
app.include_router(queries_router.router)
app.include_router(bug_reports_router.router)
app.include_router(contacts_router.router)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "connections": database_manager.get_connection_stats()}
