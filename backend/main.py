# Version History
# v1.0 - Initial FastAPI backend with subscriptions, check-ins, and scheduler wiring.
# v2.0 - Stateless push gateway: health, VAPID public key discovery, trigger-push.

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from log_config import setup_logging
from push import (
    DEFAULT_TIMEOUT,
    DEFAULT_TOPIC,
    DispatchOptions,
    PushPayload,
    PushSubscription,
    send_push_batch,
    summarize,
)
from vapid import VapidError, VapidKeyPair, load_key_pair

load_dotenv()

VERSION = "1.0.0"
VAPID_NOT_CONFIGURED = "VAPID not configured"

CORS_METHODS = ["GET", "POST", "OPTIONS"]
CORS_HEADERS = ["Content-Type"]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    vapid: VapidKeyPair | None
    vapid_error: str | None
    push_timeout: float
    push_topic: str
    cors_origins: tuple[str, ...]
    log_level: str


def _load_vapid(public: str, private: str, subject: str) -> tuple[VapidKeyPair | None, str | None]:
    if not public or not private:
        return None, VAPID_NOT_CONFIGURED
    try:
        return load_key_pair(public, private, subject), None
    except VapidError as exc:
        return None, f"VAPID keys invalid: {exc}"


@lru_cache
def get_settings() -> Settings:
    vapid, vapid_error = _load_vapid(
        os.getenv("VAPID_PUBLIC_KEY", ""),
        os.getenv("VAPID_PRIVATE_KEY", ""),
        os.getenv("VAPID_SUBJECT", "mailto:admin@example.com"),
    )
    raw_origins = os.getenv("CORS_ORIGINS", "*")

    return Settings(
        vapid=vapid,
        vapid_error=vapid_error,
        push_timeout=float(os.getenv("PUSH_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT))),
        push_topic=os.getenv("PUSH_TOPIC", DEFAULT_TOPIC),
        cors_origins=tuple(item.strip() for item in raw_origins.split(",") if item.strip()),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


def require_vapid(settings: Settings = Depends(get_settings)) -> VapidKeyPair:
    if settings.vapid is None:
        raise HTTPException(status_code=500, detail=settings.vapid_error or VAPID_NOT_CONFIGURED)
    return settings.vapid


settings = get_settings()
setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    current = get_settings()
    if current.vapid is None:
        log.error("Push delivery disabled: %s", current.vapid_error)
    else:
        log.info("VAPID key loaded (public=%s...)", current.vapid.public_key_b64[:16])
    yield


app = FastAPI(title="push-gateway", version=VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins) or ["*"],
    allow_methods=CORS_METHODS,
    allow_headers=CORS_HEADERS,
)


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class SubscriptionPayload(BaseModel):
    endpoint: str = Field(..., min_length=1)
    keys: SubscriptionKeys
    # Carried through but never read; any shape is accepted.
    deviceId: Any = None
    createdAt: Any = None

    def to_subscription(self) -> PushSubscription:
        return PushSubscription(
            endpoint=self.endpoint,
            p256dh=self.keys.p256dh,
            auth=self.keys.auth,
            device_id="" if self.deviceId is None else str(self.deviceId),
            created_at=self.createdAt,
        )


class MessagePayload(BaseModel):
    title: str = Field(..., min_length=1)
    body: str = ""
    tag: str | None = None
    url: str | None = None

    def to_payload(self) -> PushPayload:
        return PushPayload(title=self.title, body=self.body, tag=self.tag, url=self.url)


class TriggerPushRequest(BaseModel):
    # Entries are checked one by one so a bad entry is dropped, not fatal.
    subscriptions: list[Any] = Field(..., min_length=1)
    message: MessagePayload


class TriggerPushResponse(BaseModel):
    success: bool
    sent: int
    failed: int
    expiredEndpoints: list[str]


def _validation_message(exc: RequestValidationError) -> str:
    errs = exc.errors()
    if not errs:
        return "Invalid request"
    first = errs[0]
    loc = [str(part) for part in first.get("loc") or () if part != "body"]
    msg = first.get("msg") or "Invalid request"
    return f"{'.'.join(loc)}: {msg}" if loc else msg


@app.exception_handler(StarletteHTTPException)
def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": detail}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _validation_message(exc)
    log.info("Rejected request path=%s reason=%s", request.url.path, message)
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled exception: path=%s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def valid_subscriptions(entries: list[Any]) -> list[PushSubscription]:
    """Well-formed entries, one per endpoint (first occurrence wins)."""
    subscriptions: dict[str, PushSubscription] = {}
    for entry in entries:
        try:
            subscription = SubscriptionPayload.model_validate(entry).to_subscription()
        except ValidationError:
            log.debug("Dropping malformed subscription entry")
            continue
        if subscription.endpoint in subscriptions:
            log.debug("Dropping duplicate subscription endpoint=%s", subscription.endpoint)
            continue
        subscriptions[subscription.endpoint] = subscription
    return list(subscriptions.values())


@app.get("/", response_class=PlainTextResponse)
def index() -> str:
    return "Push Gateway"


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "version": VERSION}


@app.get("/vapid-public-key")
def vapid_public_key(vapid: VapidKeyPair = Depends(require_vapid)) -> dict:
    return {"key": vapid.public_key_b64}


@app.options("/{path:path}")
def preflight(path: str) -> Response:
    return Response(
        status_code=200,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": ", ".join(CORS_METHODS),
            "Access-Control-Allow-Headers": ", ".join(CORS_HEADERS),
        },
    )


@app.post("/trigger-push", response_model=TriggerPushResponse)
def trigger_push(
    payload: TriggerPushRequest,
    vapid: VapidKeyPair = Depends(require_vapid),
    settings: Settings = Depends(get_settings),
) -> TriggerPushResponse:
    subscriptions = valid_subscriptions(payload.subscriptions)
    dropped = len(payload.subscriptions) - len(subscriptions)
    if dropped:
        log.info("Dropped %d malformed or duplicate subscription entries", dropped)

    options = DispatchOptions(timeout=settings.push_timeout, topic=settings.push_topic)
    results = send_push_batch(subscriptions, payload.message.to_payload(), vapid, options)
    summary = summarize(results)

    log.info(
        "Push batch done sent=%d failed=%d expired=%d",
        summary.sent,
        summary.failed,
        len(summary.expired_endpoints),
    )
    return TriggerPushResponse(
        success=True,
        sent=summary.sent,
        failed=summary.failed,
        expiredEndpoints=summary.expired_endpoints,
    )
