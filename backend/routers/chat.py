"""
Parley Chat Router - WebSocket Handler

This module only owns the socket: it registers the connection with the
ConnectionManager and feeds it inbound frames. Everything else lives in
chat_orchestration/:

- connections.py: ConnectionManager (session table, turn pipeline)
- augmenter.py: ContextAugmenter (memory decision and injection)
- orchestrator.py: ToolOrchestrator (model/tool loop)
- session.py: Session, Turn, StreamChunk
- chat_streaming.py: StreamingRelay (ordered delivery to the socket)
"""

import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from middleware.rate_limit import client_identity

logger = logging.getLogger(__name__)

router = APIRouter()

# 1012 = service restart
CLOSE_SHUTTING_DOWN = 1012


@router.websocket("/ws/chat")
async def chat_websocket(websocket: WebSocket):
    """WebSocket endpoint for chat."""
    manager = websocket.app.state.connections
    config = websocket.app.state.config

    if manager.draining:
        await websocket.close(code=CLOSE_SHUTTING_DOWN)
        return

    identity = client_identity(websocket, trust_proxy=config.trust_proxy)
    session = await manager.connect(websocket, identity)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                logger.warning(f"Ignoring non-JSON frame from session {session.session_id[:8]}")
                continue
            if not isinstance(data, dict):
                logger.warning(f"Ignoring non-object frame from session {session.session_id[:8]}")
                continue
            await manager.handle_event(session, data)
    except WebSocketDisconnect:
        logger.info(f"Chat disconnected: {session.session_id[:8]}")
    except RuntimeError as e:
        # Socket already closed by the server (shutdown)
        logger.debug(f"Receive loop ended for {session.session_id[:8]}: {e}")
    finally:
        await manager.disconnect(session.session_id)
