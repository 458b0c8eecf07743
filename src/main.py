from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from src.routers import (
    admin,
    orders,
    webhook_configs,
    webhooks,
)

app = FastAPI(title="Order Tracker Webhooks", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("X-Correlation-ID")
        or str(uuid4())
    )
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response

app.include_router(webhooks.router)
app.include_router(webhook_configs.router)
app.include_router(orders.router)
app.include_router(admin.router)


@app.get("/")
async def root():
    return {"status": "ok", "service": "order-tracker-webhooks"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
