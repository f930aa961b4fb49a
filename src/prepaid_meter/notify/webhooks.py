"""Webhook registry and event fan-out.

Deliveries are advisory: a failing endpoint is retried with linearly growing
delays, then logged and dropped. Nothing here raises into the code that
produced the event.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx
from sqlalchemy import select

from prepaid_meter.errors import NotFoundError, TransientIOError, ValidationError
from prepaid_meter.storage.database import Database
from prepaid_meter.storage.models import Webhook

if TYPE_CHECKING:
    from prepaid_meter.config import WebhookEndpointConfig, WebhooksConfig

logger = logging.getLogger(__name__)

WILDCARD = "*"

WEBHOOK_EVENTS = frozenset(
    {
        "realtime_update",
        "balance_update",
        "balance_low",
        "balance_critical",
        "alert_created",
        "meter_connected",
        "meter_disconnected",
        "recharge_completed",
        "consumption_high",
        "voltage_anomaly",
        "device_offline",
        "device_online",
        "test",
        WILDCARD,
    }
)

SIGNATURE_HEADER = "X-Webhook-Signature"
USER_AGENT = "PrepaidMeter-Webhook/1.0"


def sign_body(secret: str, body: bytes) -> str:
    """Return the ``sha256=<hex>`` HMAC signature of a request body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_payload(
    event: str, data: dict[str, Any], meter_id: str | None, timestamp: datetime
) -> dict[str, Any]:
    return {
        "event": event,
        "timestamp": timestamp.isoformat(),
        "meterId": meter_id if meter_id is not None else data.get("meter_id"),
        "data": data,
    }


def _validate_events(events: Sequence[str]) -> list[str]:
    if not events:
        raise ValidationError("webhook must subscribe to at least one event")
    unknown = sorted(set(events) - WEBHOOK_EVENTS)
    if unknown:
        raise ValidationError(f"unknown webhook events: {', '.join(unknown)}")
    return list(events)


@dataclass(frozen=True)
class DeliveryResult:
    webhook: str
    delivered: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class WebhookRegistry:
    """CRUD over the configured webhook endpoints."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def create(
        self,
        name: str,
        url: str,
        events: Sequence[str],
        secret_key: str | None = None,
        is_active: bool = True,
    ) -> Webhook:
        if not url.startswith(("http://", "https://")):
            raise ValidationError(f"webhook url must be http(s), got {url!r}")
        webhook = Webhook(
            name=name,
            url=url,
            events=_validate_events(events),
            secret_key=secret_key,
            is_active=is_active,
        )
        async with self._db.session() as session, session.begin():
            session.add(webhook)
        logger.info("Webhook %s registered for %s", name, ", ".join(webhook.events))
        return webhook

    async def get(self, webhook_id: int) -> Webhook:
        async with self._db.session() as session:
            webhook = await session.get(Webhook, webhook_id)
        if webhook is None:
            raise NotFoundError("Webhook", webhook_id)
        return webhook

    async def list(self, active_only: bool = True) -> Sequence[Webhook]:
        stmt = select(Webhook).order_by(Webhook.id)
        if active_only:
            stmt = stmt.where(Webhook.is_active.is_(True))
        async with self._db.session() as session:
            result = await session.scalars(stmt)
            return result.all()

    async def update(self, webhook_id: int, **changes: Any) -> Webhook:
        allowed = {"name", "url", "events", "is_active", "secret_key"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"cannot update webhook fields: {', '.join(sorted(unknown))}")
        if "events" in changes:
            changes["events"] = _validate_events(changes["events"])
        async with self._db.session() as session, session.begin():
            webhook = await session.get(Webhook, webhook_id)
            if webhook is None:
                raise NotFoundError("Webhook", webhook_id)
            for field, value in changes.items():
                setattr(webhook, field, value)
        return webhook

    async def delete(self, webhook_id: int) -> None:
        async with self._db.session() as session, session.begin():
            webhook = await session.get(Webhook, webhook_id)
            if webhook is None:
                raise NotFoundError("Webhook", webhook_id)
            await session.delete(webhook)
        logger.info("Webhook %s deleted", webhook.name)

    async def sync_from_config(self, endpoints: Sequence["WebhookEndpointConfig"]) -> int:
        """Insert configured endpoints that are not registered yet, matched by name."""
        existing = {w.name for w in await self.list(active_only=False)}
        created = 0
        for endpoint in endpoints:
            if endpoint.name in existing:
                continue
            await self.create(
                endpoint.name,
                endpoint.url,
                endpoint.events,
                secret_key=endpoint.secret,
                is_active=endpoint.active,
            )
            created += 1
        return created


class WebhookDispatcher:
    """Delivers named events to every subscribed, active webhook concurrently."""

    def __init__(
        self,
        registry: WebhookRegistry,
        config: "WebhooksConfig",
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._registry = registry
        self._timeout = config.timeout
        self._retry_attempts = config.retry_attempts
        self._retry_delay = config.retry_delay
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._pending: set[asyncio.Task] = set()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def dispatch(
        self, event: str, data: dict[str, Any], meter_id: str | None = None
    ) -> list[DeliveryResult]:
        active = await self._registry.list(active_only=True)
        webhooks = [w for w in active if w.subscribes_to(event)]
        if not webhooks:
            return []

        payload = build_payload(event, data, meter_id, self._clock())
        body = json.dumps(payload, separators=(",", ":"), default=str).encode()
        results = await asyncio.gather(
            *(self._deliver(w, body) for w in webhooks), return_exceptions=True
        )
        return [self._outcome(w, result) for w, result in zip(webhooks, results)]

    @staticmethod
    def _outcome(webhook: Webhook, result: DeliveryResult | BaseException) -> DeliveryResult:
        if isinstance(result, BaseException):
            logger.error("Webhook %s crashed: %r", webhook.name, result)
            return DeliveryResult(webhook.name, False, 0, error=repr(result))
        return result

    def dispatch_background(
        self, event: str, data: dict[str, Any], meter_id: str | None = None
    ) -> asyncio.Task:
        """Schedule :meth:`dispatch` without waiting for it."""
        task = asyncio.create_task(self._dispatch_guarded(event, data, meter_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _dispatch_guarded(
        self, event: str, data: dict[str, Any], meter_id: str | None
    ) -> list[DeliveryResult]:
        try:
            return await self.dispatch(event, data, meter_id)
        except Exception:
            logger.exception("Dispatch of %s failed", event)
            return []

    async def test(self, webhook_id: int) -> DeliveryResult:
        webhook = await self._registry.get(webhook_id)
        data = {"meter_id": "TEST_METER", "message": "This is a test webhook"}
        payload = build_payload("test", data, None, self._clock())
        body = json.dumps(payload, separators=(",", ":")).encode()
        [result] = await asyncio.gather(self._deliver(webhook, body), return_exceptions=True)
        return self._outcome(webhook, result)

    async def _deliver(self, webhook: Webhook, body: bytes) -> DeliveryResult:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if webhook.secret_key:
            headers[SIGNATURE_HEADER] = sign_body(webhook.secret_key, body)

        client = self._get_client()
        attempts = 0
        last_error: TransientIOError | None = None
        status_code: int | None = None
        for attempt in range(self._retry_attempts + 1):
            if attempt:
                logger.info("Retrying webhook %s (attempt %d)", webhook.name, attempt)
                await asyncio.sleep(self._retry_delay * attempt)
            attempts += 1
            try:
                resp = await client.post(
                    webhook.url, content=body, headers=headers, timeout=self._timeout
                )
                status_code = resp.status_code
                resp.raise_for_status()
            except httpx.HTTPError as exc:
                last_error = TransientIOError(f"{type(exc).__name__}: {exc}")
                logger.warning("Webhook %s failed: %s", webhook.name, last_error)
                continue
            logger.info("Webhook sent to %s: %d", webhook.name, resp.status_code)
            return DeliveryResult(webhook.name, True, attempts, status_code=status_code)

        logger.error("Giving up on webhook %s after %d attempts", webhook.name, attempts)
        return DeliveryResult(
            webhook.name, False, attempts, status_code=status_code, error=str(last_error)
        )

    async def drain(self) -> None:
        """Wait for every background dispatch scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
