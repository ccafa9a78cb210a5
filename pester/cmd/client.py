from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from typing import Any, Dict, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from pester.utils import canonical

log = logging.getLogger("pester.cmd.client")

HELP = "Commands: /open <friend>, /close [channel], /typing, /channels, /quit. Anything else is sent to the active channel."


class ClientApp:
    def __init__(self, server_url: str, user_id: str) -> None:
        self.server_url = server_url
        self.user_id = user_id

        self.ws: Optional[ClientConnection] = None
        self.channels: Dict[str, str] = {}  # channel_id -> friend id
        self.active: Optional[str] = None
        self.stop_event = asyncio.Event()

    async def run(self, friend: Optional[str] = None) -> None:
        async with websockets.connect(self.server_url) as ws:
            self.ws = ws
            await self._send({"type": "register", "userId": self.user_id})
            if friend:
                await self._send({"type": "open_channel", "friendId": friend})
            receiver = asyncio.create_task(self._rx_loop())
            try:
                await self._command_loop()
            finally:
                self.stop_event.set()
                receiver.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await receiver

    async def _command_loop(self) -> None:
        loop = asyncio.get_running_loop()
        print(f"Pester client ready as {self.user_id}. {HELP}")
        while not self.stop_event.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                await self._handle_command(line)
            else:
                await self._cmd_say(line)

    async def _handle_command(self, line: str) -> None:
        parts = line.split()
        cmd = parts[0]
        if cmd == "/open" and len(parts) == 2:
            await self._send({"type": "open_channel", "friendId": parts[1]})
        elif cmd == "/close":
            channel_id = parts[1] if len(parts) > 1 else self.active
            if channel_id:
                await self._send({"type": "close_channel", "channelId": channel_id})
            else:
                print("No active channel")
        elif cmd == "/typing" and self.active:
            await self._send({"type": "typing", "channelId": self.active})
        elif cmd == "/channels":
            for channel_id, friend in self.channels.items():
                marker = "*" if channel_id == self.active else " "
                print(f"{marker} {channel_id} ({friend})")
        elif cmd in {"/quit", "/exit"}:
            self.stop_event.set()
        else:
            print(HELP)

    async def _cmd_say(self, text: str) -> None:
        if not self.active:
            print("No active channel; use /open <friend> first")
            return
        await self._send({"type": "message", "channelId": self.active, "text": text})

    def _connection(self) -> ClientConnection:
        if self.ws is None:
            raise RuntimeError("Client is not connected")
        return self.ws

    async def _send(self, frame: Dict[str, Any]) -> None:
        await self._connection().send(canonical.dumps_text(frame))

    async def _rx_loop(self) -> None:
        ws = self._connection()
        try:
            async for raw in ws:
                try:
                    event = canonical.loads(raw)
                except canonical.JSONDecodeError:
                    log.warning("Dropped invalid frame: %s", raw)
                    continue
                self._handle_incoming(event)
        except websockets.ConnectionClosed:
            pass
        finally:
            self.stop_event.set()

    def _handle_incoming(self, event: Dict[str, Any]) -> None:
        typ = event.get("type")
        if typ == "registered":
            log.info("Registered as %s", event.get("userId"))
        elif typ == "kicked":
            print(f"Disconnected: {event.get('message')}")
        elif typ == "channel_opened":
            self._track(event["channelId"], event["friendId"])
            status = "online" if event.get("friendOnline") else "offline"
            print(f"[{event['friendId']}] channel open ({status})")
        elif typ == "channel_invite":
            self._track(event["channelId"], event["fromUserId"])
            print(f"[{event['fromUserId']}] joined you in {event['channelId']}")
        elif typ == "message":
            print(f"[{event.get('fromUserId')}] {event.get('text')}")
        elif typ == "typing":
            print(f"[{event.get('userId')}] is typing...")
        elif typ == "user_online":
            print(f"[{event.get('userId')}] is online")
        elif typ == "user_left":
            print(f"[{event.get('userId')}] left")
        elif typ == "channel_closed":
            self.channels.pop(event.get("channelId"), None)
            if self.active == event.get("channelId"):
                self.active = next(iter(self.channels), None)
        elif typ == "error":
            print(f"ERROR: {event.get('message')}")
        else:
            log.debug("Unhandled event: %s", event)

    def _track(self, channel_id: str, friend: str) -> None:
        self.channels[channel_id] = friend
        self.active = channel_id


async def _main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Pester line client")
    parser.add_argument("--server", default="ws://localhost:4000", help="ws://host:port of the relay")
    parser.add_argument("--user", dest="user_id", required=True, help="Identifier to register under")
    parser.add_argument("--friend", default=None, help="Open a channel with this user right away")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    app = ClientApp(args.server, args.user_id)
    await app.run(friend=args.friend)


def main(argv: list[str] | None = None) -> None:
    asyncio.run(_main(argv))


if __name__ == "__main__":
    main()
