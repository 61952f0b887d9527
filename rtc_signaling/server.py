"""WebSocket transport for the signaling relay.

Each connection gets two tasks: the handler task reads frames and feeds
them to the relay in order, and a writer task drains the client's outbound
channel onto the socket.

Usage:
    rtc-signaling serve [--host HOST] [--port PORT]
"""

import asyncio
import logging
from typing import Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from rtc_signaling.config import Config
from rtc_signaling.errors import ChannelClosedError, RegistryFullError
from rtc_signaling.outbound import OutboundChannel
from rtc_signaling.relay import SignalingRelay

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


class SignalingServer:
    """Serves a SignalingRelay over WebSocket.

    Attributes:
        host: Interface to bind.
        port: Port to listen on; 0 picks a free port (see ``bound_port``).
        relay: The relay handling all routing.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        config = config or Config()
        self.host = host if host is not None else config.server.host
        self.port = port if port is not None else config.server.port
        self.relay = SignalingRelay(config.server, config.negotiation)
        self._server: Optional[Server] = None

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def handler(self, websocket: ServerConnection):
        """Handle a WebSocket connection."""
        channel = self.relay.new_channel()
        try:
            client_id = await self.relay.on_connect(channel)
        except RegistryFullError as e:
            logger.warning(f"Refusing connection from {websocket.remote_address}: {e}")
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason="registry full")
            return

        writer = asyncio.create_task(self._write_frames(websocket, channel))
        try:
            async for message in websocket:
                await self.relay.on_message(client_id, message)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {client_id}")
        finally:
            writer.cancel()
            await asyncio.gather(writer, return_exceptions=True)
            await self.relay.on_disconnect(client_id)

    async def _write_frames(self, websocket: ServerConnection, channel: OutboundChannel):
        try:
            while True:
                frame = await channel.get()
                await websocket.send(frame)
        except ChannelClosedError:
            # Only the relay closes a live client's channel: it fell behind
            await websocket.close(
                code=CLOSE_POLICY_VIOLATION, reason="outbound buffer overflow"
            )
        except websockets.exceptions.ConnectionClosed:
            pass

    async def start(self) -> Server:
        """Start listening and the session sweeper."""
        self._server = await serve(self.handler, self.host, self.port)
        self.relay.lifecycle.start()
        logger.info(f"Signaling server running on ws://{self.host}:{self.bound_port}")
        return self._server

    async def stop(self) -> None:
        """Close all connections and stop background tasks."""
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.relay.lifecycle.stop()
        await self.relay.drain()
        logger.info("Signaling server stopped")

    async def serve_forever(self) -> None:
        """Run until cancelled."""
        await self.start()
        try:
            await asyncio.Future()  # Run forever
        finally:
            await self.stop()


async def main(config: Config, host: Optional[str] = None, port: Optional[int] = None):
    """Start the signaling server."""
    server = SignalingServer(config, host=host, port=port)
    await server.serve_forever()
