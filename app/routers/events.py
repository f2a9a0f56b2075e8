"""
Event stream endpoint.

Each WebSocket connection is registered with the EventRelay and told its
subscriber id in a ``connected`` envelope. Clients send that id back as
``socketId`` when creating jobs so that events are routed to them.
"""

import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Events"])


@router.websocket("/ws")
async def event_stream(websocket: WebSocket) -> None:
    relay = websocket.app.state.event_relay
    await websocket.accept()
    subscriber_id = relay.register(websocket)
    try:
        await websocket.send_json({"event": "connected", "data": {"socketId": subscriber_id}})
        # Inbound messages are ignored; the loop only watches for disconnects.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"WebSocket closed for subscriber {subscriber_id}")
    finally:
        relay.unregister(subscriber_id)
