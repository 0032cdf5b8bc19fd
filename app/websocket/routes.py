# =============================================================================
# app/websocket/routes.py - WebSocket Routes
# =============================================================================
# WebSocket endpoint for live transcription progress.
#
# Connect: ws://host/ws/transcriptions/{job_id}?token={jwt}
#
# Events:
#   - {"type": "transcription.partial", "chunk_index": 2, "text": "..."}
#   - {"type": "transcription.complete", "status": "SUCCESS", "result": {...}}
#   - {"type": "transcription.failed", "status": "FAILURE", "error": "..."}
#
# Close codes:
#   4001 invalid token, 4003 job belongs to someone else, 4004 unknown job,
#   4000 server error
# =============================================================================

import logging
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query

from app.auth.dependencies import decode_token
from app.exceptions import AuthenticationError
from app.websocket.broadcast import get_job_owner
from app.websocket.manager import websocket_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/transcriptions/{job_id}")
async def transcription_websocket(
    websocket: WebSocket,
    job_id: str,
    token: str = Query(..., description="JWT token for authentication")
):
    """
    WebSocket endpoint for transcription job updates.

    Authentication is required via the `token` query parameter.
    Only the user who queued the job may connect.

    Example event:
        {
            "type": "transcription.partial",
            "channel_id": "550e8400-...",
            "job_id": "550e8400-...",
            "chunk_index": 2,
            "text": "Good morning class, today we"
        }
    """
    # 1. Verify JWT token
    try:
        user = decode_token(token)
    except AuthenticationError as e:
        logger.warning(f"WebSocket auth failed: {e.message}")
        await websocket.close(code=4001, reason="Invalid token")
        return

    user_id = str(user.id)

    # 2. Verify user queued this job
    try:
        owner = get_job_owner(job_id)
    except Exception as e:
        logger.error(f"WebSocket: error looking up job {job_id}: {e}")
        await websocket.close(code=4000, reason="Server error")
        return

    if owner is None:
        logger.warning(f"WebSocket: job {job_id} not found")
        await websocket.close(code=4004, reason="Job not found")
        return

    if owner != user_id:
        logger.warning(
            f"WebSocket access denied: user {user_id} "
            f"tried to watch job owned by {owner}"
        )
        await websocket.close(code=4003, reason="Access denied")
        return

    # 3. Accept connection and add to manager
    await websocket_manager.connect(job_id, websocket)

    try:
        await websocket.send_json({
            "type": "connected",
            "job_id": job_id,
            "message": "Connected to transcription updates"
        })

        while True:
            try:
                data = await websocket.receive_text()

                # Keepalive
                if data == "ping":
                    await websocket.send_text("pong")
                else:
                    logger.debug(f"WebSocket received: {data[:100]}")

            except WebSocketDisconnect:
                raise
            except Exception as e:
                logger.warning(f"WebSocket receive error: {e}")
                break

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected from job {job_id}")
    finally:
        websocket_manager.disconnect(job_id, websocket)


@router.get("/ws/status")
async def websocket_status():
    """
    Get WebSocket connection statistics.

    Returns:
        dict: Connection counts and channels being watched
    """
    channels = websocket_manager.get_active_channels()
    return {
        "total_connections": websocket_manager.get_connection_count(),
        "active_channels": channels,
        "channel_count": len(channels)
    }
