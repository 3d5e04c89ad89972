"""
Realtime analytics push channels.

- POST /api/realtime/updates publishes an AnalyticsUpdate (upstream collaborators).
- WS /v1/ws/analytics and GET /v1/analytics/realtime/sse stream role-filtered
  updates for `organizationId`/`userId`/`role`; these parameters are trusted
  as supplied by the upstream session layer.

WebSocket client messages:
- {"type": "ping"} -> {"type": "pong"}; the only thing that keeps a
  subscription alive past the idle sweep.
- {"type": "subscribe_filter", "filters": [...]} narrows the update types.
SSE clients keep alive through POST /api/realtime/subscriptions/{id}/ping.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Annotated, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse

from tessera_analytics.api.deps import get_services
from tessera_analytics.container import AnalyticsServices
from tessera_analytics.core.errors import AppError, NotFoundError, ValidationError
from tessera_analytics.core.logging import log_event
from tessera_analytics.realtime.hub import Subscription
from tessera_analytics.realtime.models import AnalyticsUpdate, Role

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

Services = Annotated[AnalyticsServices, Depends(get_services)]


def _parse_role(role: Optional[str]) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise ValidationError(f"Unknown role: {role}")


@router.post("/api/realtime/updates", status_code=202)
async def publish_update(update: AnalyticsUpdate, services: Services):
    await services.broadcaster.broadcast_update(update)
    return {"queued": True, "type": update.type.value, "organizationId": update.organization_id}


@router.get("/api/realtime/stats")
def subscription_stats(services: Services):
    return services.broadcaster.get_subscription_stats()


@router.post("/api/realtime/subscriptions/{subscription_id}/ping")
def ping_subscription(subscription_id: str, services: Services):
    if not services.broadcaster.ping(subscription_id):
        raise NotFoundError("Subscription not found")
    return {"type": "pong", "ts": datetime.now(timezone.utc).isoformat()}


@router.get("/v1/analytics/realtime/sse")
async def analytics_sse(
    services: Services,
    organization_id: str = Query(..., alias="organizationId", min_length=1),
    user_id: str = Query(..., alias="userId", min_length=1),
    role: str = Query(...),
):
    broadcaster = services.broadcaster
    subscription = broadcaster.subscribe(organization_id, user_id, _parse_role(role))

    async def event_stream():
        try:
            connected = {
                "type": "connected",
                "subscriptionId": subscription.id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            yield f"data: {json.dumps(connected)}\n\n"
            while True:
                message = await subscription.channel.receive()
                if message is None:
                    break
                yield f"data: {json.dumps(message)}\n\n"
        finally:
            broadcaster.unsubscribe(subscription.id)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.websocket("/v1/ws/analytics")
async def analytics_websocket(
    websocket: WebSocket,
    organization_id: Optional[str] = Query(None, alias="organizationId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    role: Optional[str] = Query(None),
):
    await websocket.accept()
    services: AnalyticsServices = websocket.app.state.services
    request_id = websocket.headers.get("x-request-id") or str(uuid4())

    allowed = [o.strip() for o in services.settings.WS_ALLOWED_ORIGINS.split(",") if o.strip()]
    origin = websocket.headers.get("origin")
    if allowed and allowed != ["*"] and (not origin or origin not in allowed):
        log_event("info", "ws.origin_blocked", request_id=request_id, event_type="ws.origin_blocked", extra={"origin": origin})
        await _reject_and_close(websocket, request_id, "forbidden", "Origin not allowed")
        return

    if not organization_id or not user_id:
        await _reject_and_close(websocket, request_id, "validation_error", "organizationId and userId are required")
        return

    try:
        subscription = services.broadcaster.subscribe(organization_id, user_id, _parse_role(role))
    except AppError as exc:
        await _reject_and_close(websocket, request_id, exc.code, exc.message)
        return

    sender = asyncio.create_task(_pump(websocket, subscription))
    log_event(
        "info",
        "ws.connected",
        request_id=request_id,
        organization_id=organization_id,
        user_id=user_id,
        subscription_id=subscription.id,
        event_type="ws.connected",
    )

    try:
        while True:
            raw_message = await websocket.receive_text()
            try:
                data = json.loads(raw_message)
            except ValueError:
                await websocket.send_json({"type": "error", "code": "invalid_json", "request_id": request_id})
                continue
            if not isinstance(data, dict):
                continue

            if data.get("type") == "ping":
                services.broadcaster.ping(subscription.id)
                await websocket.send_json({
                    "type": "pong",
                    "ts": datetime.now(timezone.utc).isoformat(),
                    "request_id": request_id,
                })
            elif data.get("type") == "subscribe_filter":
                try:
                    services.broadcaster.set_filters(subscription.id, data.get("filters") or [])
                except AppError as exc:
                    await websocket.send_json({"type": "error", "code": exc.code, "message": exc.message, "request_id": request_id})
                except ValueError:
                    await websocket.send_json({"type": "error", "code": "validation_error", "message": "Unknown update type in filters", "request_id": request_id})
                else:
                    await websocket.send_json({"type": "filters_updated", "filters": data.get("filters") or []})
    except WebSocketDisconnect:
        log_event("info", "ws.disconnected", request_id=request_id, subscription_id=subscription.id, event_type="ws.disconnected")
    except Exception as e:
        log_event("error", "ws.loop_error", request_id=request_id, subscription_id=subscription.id, event_type="ws.loop_error", extra={"error": str(e)})
    finally:
        sender.cancel()
        services.broadcaster.unsubscribe(subscription.id)


async def _pump(websocket: WebSocket, subscription: Subscription) -> None:
    """Forward channel messages to the socket until the channel closes."""
    while True:
        message = await subscription.channel.receive()
        if message is None:
            break
        try:
            await websocket.send_json(message)
        except Exception:
            subscription.channel.close()
            break
    try:
        await websocket.close(code=1000)
    except Exception:
        pass


async def _reject_and_close(websocket: WebSocket, request_id: str, code: str, message: str):
    try:
        await websocket.send_json({
            "type": "error",
            "code": code,
            "message": message,
            "request_id": request_id,
        })
    except Exception:
        pass
    try:
        await websocket.close(code=1008, reason=message)
    except Exception:
        pass
