"""WebSocket API endpoint for real-time job and connection updates"""
import asyncio
import logging

from fastapi import APIRouter, Cookie, WebSocket, WebSocketDisconnect

from crosspost.db.redis import get_session
from crosspost.services.event_service import event_bus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["websocket"])


async def _receive_until_disconnect(websocket: WebSocket, user_id: int) -> None:
    """Answer keepalive pings until the client goes away"""
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket disconnect for user {user_id}: code={e.code}")


@router.websocket("")
async def websocket_endpoint(websocket: WebSocket, session_id: str = Cookie(None)):
    """Streams the caller's EventBus events as ``{"event", "payload", "timestamp"}`` messages

    Authenticates using the session cookie.
    """
    await websocket.accept()

    if not session_id:
        logger.warning("WebSocket connection rejected: no session_id")
        await websocket.close(code=1008, reason="Authentication required")
        return

    user_id = get_session(session_id)
    if not user_id:
        logger.warning("WebSocket connection rejected: invalid or expired session")
        await websocket.close(code=1008, reason="Invalid or expired session")
        return

    async with event_bus.subscribe(user_id) as subscription:
        await websocket.send_json({"event": "connected", "payload": {"user_id": user_id}})
        receiver = asyncio.create_task(_receive_until_disconnect(websocket, user_id))
        try:
            while True:
                next_event = asyncio.create_task(subscription.get())
                done, _ = await asyncio.wait({next_event, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if next_event not in done:
                    next_event.cancel()
                    break
                event = next_event.result()
                await websocket.send_json({
                    "event": event.type,
                    "payload": event.data,
                    "timestamp": event.timestamp.isoformat(),
                })
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Error in WebSocket connection for user {user_id}: {e}", exc_info=True)
        finally:
            receiver.cancel()
            if subscription.dropped:
                logger.info(f"WebSocket for user {user_id} dropped {subscription.dropped} event(s) from a full queue")
