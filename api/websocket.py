"""WebSocket handler for real-time run event streaming.

Clients connect to ``/ws/{run_id}`` after starting a run. Stored events
are replayed first, then live events are forwarded until the run closes.
The only client command is ``ping``; runs cannot be cancelled mid-flight.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import EventType, get_event_bus

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()


@websocket_router.websocket("/ws/{run_id}")
async def websocket_endpoint(websocket: WebSocket, run_id: str) -> None:
    """Stream a run's events to the client.

    Args:
        websocket: The WebSocket connection.
        run_id: The run to stream events for.
    """
    await websocket.accept()
    logger.info("websocket_connected", run_id=run_id)

    event_bus = get_event_bus()

    # Subscribe before reading history so no event falls between the two.
    queue = event_bus.subscribe(run_id)

    try:
        last_replay_timestamp: float = 0.0
        history = event_bus.get_event_history(run_id)
        if history:
            logger.info("replaying_event_history", run_id=run_id, event_count=len(history))
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", run_id=run_id)
                    return

        async def send_events() -> None:
            """Forward bus events until the RUN_CLOSED sentinel arrives."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == EventType.RUN_CLOSED:
                        logger.info("run_closed_sentinel", run_id=run_id)
                        await websocket.send_json(event.model_dump(mode="json"))
                        break

                    # Already delivered during replay.
                    if event.timestamp <= last_replay_timestamp:
                        continue

                    await websocket.send_json(event.model_dump(mode="json"))
                    logger.debug("event_sent", run_id=run_id, event_type=event.type.value)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", run_id=run_id)
            except Exception as e:
                logger.error("websocket_send_error", run_id=run_id, error=str(e))

        async def receive_commands() -> None:
            """Answer client pings."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", run_id=run_id)
                        continue

                    command_type = data.get("type")
                    if command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning("unknown_command", run_id=run_id, command_type=command_type)
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", run_id=run_id)
            except Exception as e:
                logger.error("websocket_receive_error", run_id=run_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        _, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", run_id=run_id)
    except Exception as e:
        logger.error("websocket_error", run_id=run_id, error=str(e))
    finally:
        event_bus.unsubscribe(run_id, queue)
        logger.info("websocket_cleanup_complete", run_id=run_id)
