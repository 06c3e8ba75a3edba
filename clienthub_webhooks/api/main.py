from dotenv import load_dotenv

# Load environment variables first, before importing modules that depend on them
load_dotenv()

import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from clienthub_webhooks.db.session import Base, engine
from clienthub_webhooks.models import delivery_log, destination, dispatcher_run, queued_event  # noqa: F401
from clienthub_webhooks.api.routes.webhooks import router as webhooks_router
from clienthub_webhooks.api.routes.events import router as events_router
from clienthub_webhooks.api.routes.dispatch import router as dispatch_router
from clienthub_webhooks.api.routes.status import router as status_router

# Auto-create all tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="ClientHub Webhook Dispatcher",
    version="1.0.0",
    openapi_url="/openapi.json",
    docs_url="/docs",
)

origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Destination CRUD, secrets, circuit reset and test deliveries
app.include_router(
    webhooks_router,
    prefix="/webhooks",
    tags=["webhooks"],
)

# Producer endpoint
app.include_router(
    events_router,
    tags=["events"],
)

# Dispatcher invocation & status
app.include_router(
    dispatch_router,
    tags=["dispatch"],
)

# Delivery logs, queue & stats
app.include_router(
    status_router,
    tags=["analytics"],
)
