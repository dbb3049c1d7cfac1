"""
Live event channel over WebSocket.

Clients join per-video rooms and receive processing updates for them, plus
globally broadcast upload and completion notices.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from config import settings
from routers.auth_scope import AuthContext, auth_context_from_token
from services.events import Subscriber
from services.processing import ProcessingOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)

JOIN_ROOM = "join-video-room"
LEAVE_ROOM = "leave-video-room"
START_ANALYSIS = "start-analysis"
ANALYSIS_ROLES = ("editor", "admin")


def _video_id_from(message: Dict[str, Any]) -> Optional[str]:
    data = message.get("data")
    if isinstance(data, dict):
        data = data.get("videoId")
    video_id = str(data or message.get("videoId") or "").strip()
    return video_id or None


async def _pump_events(websocket: WebSocket, subscriber: Subscriber) -> None:
    while True:
        event = await subscriber.next_event()
        await websocket.send_json(event)


async def _handle_message(
    message: Dict[str, Any],
    auth: AuthContext,
    subscriber: Subscriber,
    orchestrator: ProcessingOrchestrator,
) -> None:
    broadcaster = orchestrator.broadcaster
    kind = str(message.get("event") or "")
    video_id = _video_id_from(message)

    if kind not in (JOIN_ROOM, LEAVE_ROOM, START_ANALYSIS):
        broadcaster.send(subscriber, "error", {"message": f"Unknown event: {kind or '<missing>'}"})
        return
    if not video_id:
        broadcaster.send(subscriber, "error", {"message": f"{kind} requires a videoId"})
        return

    if kind == LEAVE_ROOM:
        broadcaster.unsubscribe(video_id, subscriber)
        return

    video = await orchestrator.repository.get_video(video_id, auth.tenant_id)
    if video is None:
        broadcaster.send(subscriber, "error", {"videoId": video_id, "message": "Video not found"})
        return

    if kind == JOIN_ROOM:
        broadcaster.subscribe(video_id, subscriber)
        logger.info("Subscriber %s joined room video-%s", subscriber.id, video_id)
        return

    if auth.role not in ANALYSIS_ROLES:
        broadcaster.send(subscriber, "error", {"videoId": video_id, "message": "Insufficient permissions"})
        return
    logger.info("Received start-analysis for video %s from subscriber %s", video_id, subscriber.id)
    orchestrator.start_processing(video_id, requester=subscriber)


@router.websocket("/ws")
async def event_channel(websocket: WebSocket, token: Optional[str] = Query(default=None)):
    try:
        auth = auth_context_from_token(token or "")
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    orchestrator: ProcessingOrchestrator = websocket.app.state.orchestrator
    broadcaster = orchestrator.broadcaster

    await websocket.accept()
    subscriber = broadcaster.connect(Subscriber(maxsize=settings.EVENT_QUEUE_SIZE, tenant_id=auth.tenant_id))
    pump = asyncio.create_task(_pump_events(websocket, subscriber))
    logger.info("Subscriber %s connected (tenant=%s)", subscriber.id, auth.tenant_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                message = None
            if not isinstance(message, dict):
                broadcaster.send(subscriber, "error", {"message": "Messages must be JSON objects"})
                continue
            await _handle_message(message, auth, subscriber, orchestrator)
    except WebSocketDisconnect:
        logger.info("Subscriber %s disconnected", subscriber.id)
    finally:
        pump.cancel()
        try:
            await pump
        except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            pass
        broadcaster.disconnect(subscriber)
