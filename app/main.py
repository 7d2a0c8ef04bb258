from fastapi import FastAPI
from tortoise.contrib.fastapi import register_tortoise

from app import settings
from app.routers import bookings, charges, ledger, refunds

TORTOISE_ORM = {
    "connections": {"default": settings.db_url},
    "apps": {
        "models": {
            "models": ["app.models"],
            "default_connection": "default",
        },
    },
    "use_tz": True,
    "timezone": "UTC",
}

app = FastAPI(title="Settlements API", version="0.1.0")

app.include_router(bookings.router)
app.include_router(charges.router)
app.include_router(refunds.router)
app.include_router(ledger.router)

register_tortoise(
    app,
    config=TORTOISE_ORM,
    generate_schemas=settings.GENERATE_SCHEMAS,
    add_exception_handlers=True,
)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}
