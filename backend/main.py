## File: backend/main.py
# Builds the FastAPI application: audit and CORS middleware, one router per
# feature package, and the startup/shutdown hooks that connect the database
# and run the reminder scheduler.

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rentdesk.admin.routes import router as admin_router
from rentdesk.auth.routes import router as auth_router
from rentdesk.bookings.admin_routes import router as admin_booking_router
from rentdesk.bookings.routes import router as booking_router
from rentdesk.chat.routes import router as chat_router
from rentdesk.core.audit import AuditLogMiddleware
from rentdesk.core.config import settings
from rentdesk.core.scheduler import shutdown as stop_scheduler
from rentdesk.core.scheduler import start as start_scheduler
from rentdesk.db.prisma_client import db
from rentdesk.invoices.routes import admin_router as admin_invoice_router
from rentdesk.invoices.routes import router as invoice_router
from rentdesk.notifications.routes import router as notification_router
from rentdesk.packages.routes import admin_router as admin_package_router
from rentdesk.packages.routes import router as package_router
from rentdesk.realtime.routes import router as realtime_router
from rentdesk.vehicles.routes import admin_router as admin_vehicle_router
from rentdesk.vehicles.routes import router as vehicle_router

logging.basicConfig(
    level=logging.DEBUG if settings.env == "development" else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("rentdesk")

app = FastAPI(title="RentDesk")

app.add_middleware(AuditLogMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.public_url] if settings.env == "production" else ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(vehicle_router)
app.include_router(package_router)
app.include_router(booking_router)
app.include_router(invoice_router)
app.include_router(notification_router)
app.include_router(chat_router)
app.include_router(realtime_router)

app.include_router(admin_router)
app.include_router(admin_booking_router)
app.include_router(admin_vehicle_router)
app.include_router(admin_package_router)
app.include_router(admin_invoice_router)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.on_event("startup")
async def on_startup():
    await db.connect()
    start_scheduler()
    logger.info("RentDesk started in %s mode", settings.env)


@app.on_event("shutdown")
async def on_shutdown():
    stop_scheduler()
    if db.is_connected():
        await db.disconnect()


@app.get("/")
async def root():
    return {"message": "RentDesk API"}
