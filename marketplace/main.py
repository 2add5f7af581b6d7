import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import ADMIN_EMAIL, ADMIN_PASSWORD, EVENTS_ENABLED, LOG_LEVEL, NOTIFICATION_QUEUE
from .crud.users import ensure_admin_user
from .database import SessionLocal, init_db
from .handlers import EVENT_KEYS, handle_marketplace_event
from .messaging import start_consumer_in_thread
from .routers import (
    admin_router,
    auth_router,
    booking_router,
    category_router,
    delivery_slot_router,
    invoice_router,
    notification_router,
    order_router,
    payment_router,
    producer_router,
    product_router,
    user_router,
    wallet_router,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("marketplace")

APP_NAME = "marketplace"

app = FastAPI(
    title="Fresh Produce Marketplace",
    description="Producers sell fresh products, clients order, book delivery slots and pay",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router.router)
app.include_router(user_router.router)
app.include_router(product_router.router)
app.include_router(category_router.router)
app.include_router(producer_router.router)
app.include_router(order_router.router)
app.include_router(delivery_slot_router.router)
app.include_router(booking_router.router)
app.include_router(invoice_router.router)
app.include_router(payment_router.router)
app.include_router(notification_router.router)
app.include_router(wallet_router.router)
app.include_router(admin_router.router)


@app.on_event("startup")
def _startup() -> None:
    init_db()

    db = SessionLocal()
    try:
        ensure_admin_user(db, ADMIN_EMAIL, ADMIN_PASSWORD)
    finally:
        db.close()

    # e-mails for order and invoice events
    if EVENTS_ENABLED:
        start_consumer_in_thread(
            queue_name=NOTIFICATION_QUEUE,
            binding_keys=list(EVENT_KEYS),
            handler=handle_marketplace_event,
            prefetch_count=5,
        )
    else:
        logger.info("EVENTS_ENABLED is off, not starting the notification consumer")


@app.get("/")
def root():
    return {"service": APP_NAME, "status": "running", "version": "1.0.0"}


@app.get("/health")
def health():
    return {"status": "healthy", "service": APP_NAME}
