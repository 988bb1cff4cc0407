# routers/websocket_router.py — Real-time delivery of committed domain events
import logging
from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query

from auth import AuthenticationFailed, CurrentUser, authenticate
from dependencies import Services, get_services, services_for
from errors import NotFound
from events import DomainEvent, user_channel
from rbac import Scope, WorkspacePermission

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("workhub.ws")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def can_subscribe(services: Services, user: CurrentUser, channel: str) -> bool:
    """A connection may listen on its own user channel and on scopes it can see"""
    kind, _, scope_id = channel.partition(":")
    if not scope_id:
        return False
    if kind == "user":
        return scope_id == user.id

    async def _check(tx) -> bool:
        try:
            if kind == "workspace":
                return await services.engine.authorize(
                    tx, user.id, Scope.workspace(scope_id), WorkspacePermission.VIEW_WORKSPACE,
                )
            if kind == "project":
                return await services.engine.can_access_project(tx, scope_id, user.id)
        except NotFound:
            return False
        return False

    return await services.store.read(_check)


class Connection:
    """One socket and the fan-out subscriptions it holds"""

    def __init__(self, websocket: WebSocket, services: Services, user: CurrentUser):
        self.websocket = websocket
        self.services = services
        self.user = user
        self.subscriptions: Dict[str, str] = {}  # channel -> subscription id

    async def _deliver(self, event: DomainEvent) -> None:
        # scope access can be revoked after subscribing; re-check before every send
        if not event.channel.startswith("user:") and not await can_subscribe(self.services, self.user, event.channel):
            self.unsubscribe(event.channel)
            logger.info(f"WS access revoked: user={self.user.id[:8]} channel={event.channel}")
            await self.websocket.send_json({"type": "unsubscribed", "channel": event.channel, "reason": "access_revoked"})
            return
        await self.websocket.send_json(event.to_message())

    def subscribe(self, channel: str) -> None:
        if channel not in self.subscriptions:
            self.subscriptions[channel] = self.services.fanout.subscribe(channel, self._deliver)

    def unsubscribe(self, channel: str) -> None:
        subscription_id = self.subscriptions.pop(channel, None)
        if subscription_id:
            self.services.fanout.unsubscribe(channel, subscription_id)

    def close(self) -> None:
        for channel in list(self.subscriptions):
            self.unsubscribe(channel)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
):
    """Push task, project and workspace events to subscribed clients"""
    services = services_for(websocket)
    try:
        user = await authenticate(services.store, token)
    except AuthenticationFailed:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    await websocket.accept()
    conn = Connection(websocket, services, user)
    conn.subscribe(user_channel(user.id))
    logger.info(f"WS connected: user={user.id[:8]}")

    await websocket.send_json({
        "type": "connected",
        "user_id": user.id,
        "channels": list(conn.subscriptions),
        "timestamp": _now(),
    })

    try:
        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type", "")
            channel = data.get("channel", "")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})

            elif msg_type == "subscribe" and channel:
                if await can_subscribe(services, user, channel):
                    conn.subscribe(channel)
                    await websocket.send_json({"type": "subscribed", "channel": channel})
                else:
                    await websocket.send_json({"type": "error", "channel": channel, "detail": "Subscription denied"})

            elif msg_type == "unsubscribe" and channel:
                conn.unsubscribe(channel)
                await websocket.send_json({"type": "unsubscribed", "channel": channel})

    except WebSocketDisconnect:
        logger.info(f"WS disconnected: user={user.id[:8]}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        conn.close()


@router.get("/ws/stats")
async def websocket_stats(services: Services = Depends(get_services)):
    """Get fan-out subscription statistics"""
    return services.fanout.get_stats()
