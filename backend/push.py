# Version History
# v1.0 - Web Push send helper with automatic cleanup of expired subscriptions.
# v2.0 - In-house VAPID signing and aes128gcm encryption, concurrent batch
#        delivery, per-subscription results instead of deleting from storage.

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Iterable

import requests

import b64url
from ece import encrypt
from vapid import VapidKeyPair, vapid_headers

logger = logging.getLogger(__name__)

DEFAULT_TTL = 86400
# requests applies this to the connect and to each socket read, not to the
# whole exchange, and DNS lookups are not covered at all. The batch deadline
# below bounds how long any one subscription can hold up the response.
DEFAULT_TIMEOUT = 10.0
DEADLINE_FACTOR = 3
DEFAULT_TOPIC = "new-message"
MAX_WORKERS = 32

EXPIRED_STATUSES = (404, 410)
RATE_LIMITED_STATUS = 429


@dataclass(frozen=True)
class PushSubscription:
    endpoint: str
    p256dh: str
    auth: str
    device_id: str = ""
    created_at: Any = None

    @property
    def p256dh_key(self) -> bytes:
        return b64url.decode(self.p256dh)

    @property
    def auth_secret(self) -> bytes:
        return b64url.decode(self.auth)


@dataclass(frozen=True)
class PushPayload:
    title: str
    body: str
    tag: str | None = None
    url: str | None = None

    def to_bytes(self) -> bytes:
        data = {"title": self.title, "body": self.body}
        if self.tag is not None:
            data["tag"] = self.tag
        if self.url is not None:
            data["url"] = self.url
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


@dataclass(frozen=True)
class PushResult:
    endpoint: str
    success: bool
    status_code: int | None = None
    error: str | None = None
    should_remove: bool = False


@dataclass(frozen=True)
class DeliverySummary:
    sent: int = 0
    failed: int = 0
    expired_endpoints: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DispatchOptions:
    timeout: float = DEFAULT_TIMEOUT
    ttl: int = DEFAULT_TTL
    topic: str = DEFAULT_TOPIC
    deadline: float | None = None

    @property
    def total_deadline(self) -> float:
        if self.deadline is not None:
            return self.deadline
        return self.timeout * DEADLINE_FACTOR


def classify_response(endpoint: str, status_code: int, text: str = "") -> PushResult:
    if 200 <= status_code < 300:
        return PushResult(endpoint=endpoint, success=True, status_code=status_code)

    if status_code in EXPIRED_STATUSES:
        logger.info("Push subscription expired status=%s endpoint=%s", status_code, endpoint)
        return PushResult(
            endpoint=endpoint,
            success=False,
            status_code=status_code,
            error="Subscription expired",
            should_remove=True,
        )

    if status_code == RATE_LIMITED_STATUS:
        logger.warning("Push service rate limited endpoint=%s", endpoint)
        return PushResult(endpoint=endpoint, success=False, status_code=status_code, error="Rate limited")

    logger.warning("Push failed status=%s endpoint=%s body=%s", status_code, endpoint, text)
    error = f"Push service responded {status_code}"
    if text:
        error = f"{error}: {text}"
    return PushResult(endpoint=endpoint, success=False, status_code=status_code, error=error)


def build_request(
    subscription: PushSubscription,
    payload: PushPayload,
    vapid: VapidKeyPair,
    options: DispatchOptions,
) -> tuple[dict[str, str], bytes]:
    auth = vapid_headers(subscription.endpoint, vapid)
    message = encrypt(payload.to_bytes(), subscription.p256dh_key, subscription.auth_secret)
    body = message.body
    headers = {
        "Authorization": auth.authorization,
        "Content-Type": "application/octet-stream",
        "Content-Encoding": "aes128gcm",
        "Content-Length": str(len(body)),
        "TTL": str(options.ttl),
        "Urgency": "high",
        "Topic": options.topic,
    }
    return headers, body


def send_push(
    subscription: PushSubscription,
    payload: PushPayload,
    vapid: VapidKeyPair,
    options: DispatchOptions | None = None,
) -> PushResult:
    options = options or DispatchOptions()
    endpoint = subscription.endpoint

    try:
        headers, body = build_request(subscription, payload, vapid, options)
    except ValueError as exc:
        # Bad endpoint or subscriber keys: nothing is sent for this one.
        logger.warning("Push not sent endpoint=%s reason=%s", endpoint, exc)
        return PushResult(endpoint=endpoint, success=False, error=str(exc))

    try:
        response = requests.post(endpoint, data=body, headers=headers, timeout=options.timeout)
    except requests.RequestException as exc:
        logger.warning("Push transport error endpoint=%s error=%s", endpoint, exc)
        return PushResult(endpoint=endpoint, success=False, error=str(exc) or type(exc).__name__)

    return classify_response(endpoint, response.status_code, response.text)


def _send_guarded(
    subscription: PushSubscription,
    payload: PushPayload,
    vapid: VapidKeyPair,
    options: DispatchOptions,
) -> PushResult:
    try:
        return send_push(subscription, payload, vapid, options)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected push failure endpoint=%s", subscription.endpoint)
        return PushResult(endpoint=subscription.endpoint, success=False, error=str(exc) or type(exc).__name__)


def send_push_batch(
    subscriptions: list[PushSubscription],
    payload: PushPayload,
    vapid: VapidKeyPair,
    options: DispatchOptions | None = None,
) -> list[PushResult]:
    """Deliver ``payload`` to every subscription concurrently.

    Results come back in input order. Every subscription gets exactly one
    result; a failing or hanging endpoint only affects its own entry. A call
    still running after ``options.total_deadline`` seconds is reported as
    failed and left to finish in the background.
    """
    if not subscriptions:
        return []

    options = options or DispatchOptions()
    workers = min(len(subscriptions), MAX_WORKERS)
    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="push")
    try:
        futures = [pool.submit(_send_guarded, sub, payload, vapid, options) for sub in subscriptions]
        done, _ = wait(futures, timeout=options.total_deadline)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    results = []
    for subscription, future in zip(subscriptions, futures):
        if future in done:
            results.append(future.result())
            continue
        logger.warning("Push deadline exceeded endpoint=%s", subscription.endpoint)
        results.append(
            PushResult(
                endpoint=subscription.endpoint,
                success=False,
                error=f"No response within {options.total_deadline:g}s",
            )
        )
    return results


def summarize(results: Iterable[PushResult]) -> DeliverySummary:
    sent = 0
    failed = 0
    expired: list[str] = []

    for result in results:
        if result.success:
            sent += 1
            continue
        failed += 1
        if result.should_remove:
            expired.append(result.endpoint)

    return DeliverySummary(sent=sent, failed=failed, expired_endpoints=expired)
