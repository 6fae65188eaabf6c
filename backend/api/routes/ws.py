"""WebSocket endpoint for real-time run updates."""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import logging
import json

from api.websockets.connection_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/flows/{flow_id}")
async def flow_updates(websocket: WebSocket, flow_id: str):
    """
    Stream run events for one flow.

    Server pushes events, each carrying run_id, subject_id, status and
    current_node_id:
    - run.started
    - run.node_processed: {node_id, next_node_id}
    - run.suspended: {node_id}
    - run.completed, run.errored, run.cancelled

    Clients may send {"type": "ping"} as a keepalive.
    """
    await manager.connect(websocket, flow_id=flow_id)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
                if msg.get("type") == "ping":
                    await websocket.send_text(json.dumps({"type": "pong"}))
            except json.JSONDecodeError:
                pass
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for flow {flow_id}: {e}")
    finally:
        await manager.disconnect(websocket, flow_id=flow_id)
