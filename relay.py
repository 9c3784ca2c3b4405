"""
Best-effort real-time relay.

Clients join rooms and publish to rooms over a WebSocket. Delivery is
at-most-once with no ordering guarantee: a publish reaches whoever is
subscribed at that instant and is otherwise dropped. ``publish`` may be
called from worker threads (sync routes and service listeners).
"""
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from logger import get_logger, log_event

log = get_logger("relay")


class Subscriber:
    def __init__(self, websocket: WebSocket, user_id: str):
        self.websocket = websocket
        self.user_id = user_id
        self.queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.loop = asyncio.get_running_loop()

    def deliver(self, message: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)


class Relay:
    def __init__(self):
        self._rooms: Dict[str, Set[Subscriber]] = defaultdict(set)
        self._lock = threading.Lock()

    def join(self, room: str, subscriber: Subscriber) -> None:
        with self._lock:
            self._rooms[room].add(subscriber)
        log_event(log, logging.DEBUG, "Joined room", room=room, user=subscriber.user_id)

    def leave_all(self, subscriber: Subscriber) -> None:
        with self._lock:
            for room in [r for r, members in self._rooms.items() if subscriber in members]:
                self._rooms[room].discard(subscriber)
                if not self._rooms[room]:
                    del self._rooms[room]

    def publish(self, room: str, event: str, data: Any) -> int:
        """Forward to the room's current subscribers; returns how many got it."""
        with self._lock:
            members = list(self._rooms.get(room, ()))
        for subscriber in members:
            subscriber.deliver({"event": event, "room": room, "data": data})
        log_event(log, logging.INFO, "Relayed event", event=event, room=room, delivered=len(members))
        return len(members)

    async def serve(self, websocket: WebSocket, user_id: str) -> None:
        """Run one connection: the user's own room is joined automatically."""
        await websocket.accept()
        subscriber = Subscriber(websocket, user_id)
        self.join(user_id, subscriber)

        async def pump():
            while True:
                message = await subscriber.queue.get()
                await websocket.send_json(message)

        writer = asyncio.create_task(pump())
        try:
            while True:
                try:
                    incoming = await websocket.receive_json()
                except ValueError:
                    log_event(log, logging.WARNING, "Ignored relay event", user=user_id, event=None)
                    continue
                event = incoming.get("event") if isinstance(incoming, dict) else None
                room = incoming.get("room") if event else None
                if event == "join" and room:
                    self.join(str(room), subscriber)
                elif event == "send_message" and room:
                    self.publish(str(room), "receive_message", {"from": user_id, "data": incoming.get("data")})
                else:
                    log_event(log, logging.WARNING, "Ignored relay event", user=user_id, event=event)
        except WebSocketDisconnect:
            log_event(log, logging.DEBUG, "Relay client disconnected", user=user_id)
        finally:
            writer.cancel()
            self.leave_all(subscriber)
