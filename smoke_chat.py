import asyncio
import json
import sys

import websockets

URL = "ws://localhost:5000/ws/chat"


async def recv_event(ws, name):
    # Skip frames until the wanted event shows up
    while True:
        frame = json.loads(await ws.recv())
        if frame.get("event") == name:
            return frame["data"]


async def main(url: str = URL):
    async with websockets.connect(url) as ws:
        rooms = await recv_event(ws, "room-list")
        print(f"Rooms: {rooms}")

        await ws.send(json.dumps({"event": "join", "data": {"username": "smoke", "avatarIndex": 0}}))
        history = await recv_event(ws, "room-history")
        print(f"History: {len(history)} message(s)")

        await ws.send(json.dumps({"event": "send-message", "data": {"message": "Hello from Python!"}}))
        msg = await recv_event(ws, "receive-message")
        print(f"Received: {msg['username']}: {msg['message']}")


if __name__ == "__main__":
    asyncio.run(main(*sys.argv[1:]))
