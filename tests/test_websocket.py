"""Tests for api/websocket.py -- event replay and ping handling."""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import api.websocket as websocket_module
from api.websocket import websocket_router
from events.bus import EventBus
from events.types import AgentEvent, EventType


@pytest.fixture()
def bus(monkeypatch: pytest.MonkeyPatch) -> EventBus:
    bus = EventBus()
    monkeypatch.setattr(websocket_module, "get_event_bus", lambda: bus)
    return bus


@pytest.fixture()
def client() -> TestClient:
    app = FastAPI()
    app.include_router(websocket_router)
    return TestClient(app)


class TestWebSocket:
    def test_history_replayed_then_ping(self, bus: EventBus, client: TestClient) -> None:
        asyncio.run(bus.publish(AgentEvent(type=EventType.RUN_STARTED, run_id="run_ws")))
        asyncio.run(
            bus.publish(
                AgentEvent(
                    type=EventType.FRAMEWORK_SELECTED,
                    run_id="run_ws",
                    data={"framework": "vue", "source": "classifier"},
                )
            )
        )

        with client.websocket_connect("/ws/run_ws") as ws:
            first = ws.receive_json()
            second = ws.receive_json()
            assert [first["type"], second["type"]] == ["run_started", "framework_selected"]
            assert second["data"]["framework"] == "vue"

            ws.send_json({"type": "ping", "timestamp": 123})
            assert ws.receive_json() == {"type": "pong", "timestamp": 123}

    def test_subscriber_removed_on_disconnect(self, bus: EventBus, client: TestClient) -> None:
        with client.websocket_connect("/ws/run_gone") as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()
        assert bus.get_subscriber_count("run_gone") == 0
