"""REST endpoints and the WebSocket snapshot stream."""

import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from prepaid_meter.context import SimulationContext
from prepaid_meter.errors import NotFoundError, ValidationError
from prepaid_meter.storage.models import TransactionType

logger = logging.getLogger(__name__)


class RechargeRequest(BaseModel):
    meter_id: str | None = None
    amount: float
    description: str | None = None


class DeviceActionRequest(BaseModel):
    meter_id: str | None = None
    reason: str | None = None


class WebhookCreateRequest(BaseModel):
    name: str
    url: str
    events: list[str] = Field(default_factory=lambda: ["*"])
    secret_key: str | None = None
    is_active: bool = True


def install_error_handlers(app: FastAPI) -> None:
    """Translate domain errors into HTTP responses."""

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, "message": str(exc)})

    @app.exception_handler(ValidationError)
    async def invalid(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})


def build_router(context: SimulationContext) -> APIRouter:
    router = APIRouter()
    default_meter = context.default_meter_id

    def ok(data: Any, **extra: Any) -> dict[str, Any]:
        return {"success": True, "data": data, **extra}

    @router.get("/api/status")
    async def status():
        return ok(context.status())

    @router.post("/api/simulation/start")
    async def start_simulation():
        await context.start()
        return ok(context.scheduler.status())

    @router.post("/api/simulation/stop")
    async def stop_simulation():
        await context.stop()
        return ok(context.scheduler.status())

    @router.get("/api/meters")
    async def list_meters():
        return ok([m.to_dict() for m in await context.meters.list()])

    @router.get("/api/device/status")
    async def device_status(meter_id: str = default_meter):
        meter = await context.meters.get(meter_id)
        return ok(meter.to_dict())

    @router.post("/api/device/disconnect")
    async def disconnect(body: DeviceActionRequest):
        meter = await context.disconnect(body.meter_id or default_meter, body.reason)
        return ok(meter.to_dict(), message="Meter disconnected successfully")

    @router.post("/api/device/reconnect")
    async def reconnect(body: DeviceActionRequest):
        meter = await context.reconnect(body.meter_id or default_meter, body.reason)
        return ok(meter.to_dict(), message="Meter reconnected successfully")

    @router.get("/api/realtime/latest")
    async def latest_reading(meter_id: str = default_meter):
        sample = await context.readings.latest_sample(meter_id)
        if sample is None:
            raise NotFoundError("Realtime data", meter_id)
        return ok(sample.to_dict())

    @router.get("/api/historical")
    async def historical(meter_id: str = default_meter, hours: int = 24):
        since = context.clock() - timedelta(hours=hours)
        buckets = await context.readings.buckets_since(meter_id, since)
        return ok([b.to_dict() for b in buckets])

    @router.get("/api/balance")
    async def balance(meter_id: str = default_meter):
        row = await context.ledger.get_balance(meter_id)
        critical = context.config.alerts.critical_balance_threshold
        return ok(
            {
                "meter_id": row.meter_id,
                "current_balance": row.current_balance,
                "last_updated": row.last_updated.isoformat(),
                "status": "active" if row.current_balance > critical else "low_balance",
            }
        )

    @router.post("/api/balance/recharge")
    async def recharge(body: RechargeRequest):
        meter_id = body.meter_id or default_meter
        entry = await context.recharge(meter_id, body.amount, body.description)
        return ok(entry.to_dict(), message="Recharge completed successfully")

    @router.get("/api/balance/transactions")
    async def transactions(
        meter_id: str = default_meter, limit: int = 50, type: TransactionType | None = None
    ):
        rows = await context.ledger.transactions(meter_id, limit=limit, type=type)
        summary = await context.ledger.transactions_summary(meter_id)
        return ok([t.to_dict() for t in rows], summary=summary)

    @router.get("/api/alerts")
    async def alerts(meter_id: str = default_meter, limit: int = 50, unread_only: bool = False):
        rows = await context.alerts.list_alerts(meter_id, limit=limit, unread_only=unread_only)
        return ok([a.to_dict() for a in rows])

    @router.get("/api/alerts/summary")
    async def alerts_summary(meter_id: str = default_meter):
        return ok(await context.alerts.summary(meter_id))

    @router.post("/api/alerts/read-all")
    async def read_all_alerts(meter_id: str = default_meter):
        return ok({"updated": await context.alerts.mark_all_read(meter_id)})

    @router.post("/api/alerts/{alert_id}/read")
    async def read_alert(alert_id: int):
        alert = await context.alerts.mark_read(alert_id)
        return ok(alert.to_dict())

    @router.get("/api/webhooks")
    async def list_webhooks(active_only: bool = False):
        rows = await context.webhooks.list(active_only=active_only)
        return ok([w.to_dict() for w in rows])

    @router.post("/api/webhooks", status_code=201)
    async def create_webhook(body: WebhookCreateRequest):
        webhook = await context.webhooks.create(
            body.name,
            body.url,
            body.events,
            secret_key=body.secret_key,
            is_active=body.is_active,
        )
        return ok(webhook.to_dict())

    @router.delete("/api/webhooks/{webhook_id}")
    async def delete_webhook(webhook_id: int):
        await context.webhooks.delete(webhook_id)
        return ok({"deleted": webhook_id})

    @router.post("/api/webhooks/{webhook_id}/test")
    async def test_webhook(webhook_id: int):
        result = await context.dispatcher.test(webhook_id)
        return {
            "success": result.delivered,
            "data": {
                "attempts": result.attempts,
                "status_code": result.status_code,
                "error": result.error,
            },
        }

    @router.websocket("/ws")
    async def snapshot_stream(ws: WebSocket):
        """Push every tick's reading and balance to the client."""
        await ws.accept()
        logger.info("WebSocket /ws: client connected")
        async with context.hub.subscribe() as queue:
            try:
                if context.hub.latest is not None:
                    await ws.send_json(context.hub.latest)
                while True:
                    await ws.send_json(await queue.get())
            except WebSocketDisconnect:
                logger.info("WebSocket /ws: client disconnected")

    return router
