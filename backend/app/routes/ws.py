"""Live notification channel."""

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from app.config import logger
from app.deps import load_user
from app.errors import ServiceError
from app.models.user import Role
from app.services.push import PushSession

router = APIRouter(tags=["notifications"])


@router.websocket("/ws/notifications")
async def notifications_socket(websocket: WebSocket, token: str = Query(None)):
    """Authenticate once with ``?token=<jwt>``, then receive ``notification`` events.

    A text ``ping`` is answered with ``pong``. The connection is refused
    (close code 1008) before acceptance when the token does not verify.
    """
    db = websocket.app.state.db
    hub = websocket.app.state.hub

    try:
        user = await load_user(db, token)
    except ServiceError as e:
        logger.warning(f"🚫 WebSocket connection refused: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    admin_id = await hub.lookup_admin(user.user_id) if user.role == Role.TEACHER.value else None
    session = PushSession(websocket, user.user_id, user.role, admin_id)

    await websocket.accept()
    await hub.registry.add(session)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket {session.session_id} closed by client (code {e.code})")
    finally:
        await hub.registry.remove(session)
