"""WebSocket endpoint: live events, replay from sequence, keepalive."""
from __future__ import annotations

import asyncio
import logging
import time

from fastapi import APIRouter
from starlette.websockets import WebSocket, WebSocketDisconnect

from hwsigner.events.notifier import Subscription
from hwsigner.signer import HardwareSigner

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])

# Keepalive constants
PING_INTERVAL_SECONDS = 30
MAX_MISSED_PONGS = 3


class WebSocketClient:
    """One connected event-stream client."""

    def __init__(self, ws: WebSocket):
        self.ws = ws
        self.last_pong: float = time.time()
        self.missed_pongs: int = 0

    async def send_event(self, event: dict) -> bool:
        """Send an event frame. Returns False if the socket is gone."""
        try:
            await self.ws.send_json({"type": "event", **event})
            return True
        except (WebSocketDisconnect, RuntimeError):
            return False


async def _forward_events(client: WebSocketClient, subscription: Subscription) -> None:
    async for event in subscription:
        if not await client.send_event(event.model_dump(mode="json")):
            return


async def _replay_events(ws: WebSocket, signer: HardwareSigner, since_seq: int) -> None:
    """Replay journaled events with seq > since_seq, then send replay_complete."""
    if signer.journal is None:
        await ws.send_json({"type": "replay_unavailable", "last_seq": signer.notifier.latest_seq})
        return

    last_seq = since_seq
    for event in await signer.journal.replay(since_seq):
        await ws.send_json({"type": "event", **event})
        last_seq = event["seq"]

    await ws.send_json({"type": "replay_complete", "last_seq": last_seq})


async def _keepalive_loop(client: WebSocketClient) -> None:
    """Send pings every PING_INTERVAL_SECONDS. Close after MAX_MISSED_PONGS."""
    while True:
        await asyncio.sleep(PING_INTERVAL_SECONDS)
        try:
            await client.ws.send_json({"type": "ping"})
        except (WebSocketDisconnect, RuntimeError):
            return
        client.missed_pongs += 1
        if client.missed_pongs >= MAX_MISSED_PONGS:
            await client.ws.close()
            return


@router.websocket("/ws/events")
async def ws_events(ws: WebSocket):
    """WebSocket endpoint for real-time event streaming.

    Protocol:
    1. Client connects; server sends ``{"type":"hello","latest_seq":N}``
    2. Live events stream as ``{"type":"event","seq":...,"event_type":...}``
    3. Client may send ``{"type":"replay","since_seq":N}``; server replays
       journaled events then ``replay_complete``. Replayed and live frames
       can overlap; clients dedupe by ``seq``.
       A non-integer ``since_seq`` gets ``{"type":"error","reason":...}``.
    4. Keepalive: server pings every 30s, client pongs, 3 missed = close
    """
    await ws.accept()
    signer: HardwareSigner = ws.app.state.signer
    subscription = signer.subscribe()
    client = WebSocketClient(ws)
    await ws.send_json({"type": "hello", "latest_seq": signer.notifier.latest_seq})

    forward_task = asyncio.create_task(_forward_events(client, subscription))
    keepalive_task = asyncio.create_task(_keepalive_loop(client))
    try:
        while True:
            try:
                raw = await ws.receive_json()
            except WebSocketDisconnect:
                break
            if not isinstance(raw, dict):
                continue

            msg_type = raw.get("type")
            if msg_type == "replay":
                try:
                    since_seq = int(raw.get("since_seq", 0))
                except (TypeError, ValueError):
                    await ws.send_json({"type": "error", "reason": "since_seq must be an integer"})
                    continue
                await _replay_events(ws, signer, since_seq)
            elif msg_type == "pong":
                client.missed_pongs = 0
                client.last_pong = time.time()
            elif msg_type == "ping":
                await ws.send_json({"type": "pong"})
            # Other message types are ignored
    finally:
        subscription.close()
        keepalive_task.cancel()
        forward_task.cancel()
        if subscription.dropped:
            logger.info("Event stream client fell behind; %d events dropped", subscription.dropped)
