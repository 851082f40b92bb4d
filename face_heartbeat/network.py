"""
TCP transport for heart-rate results.

Wire format (all integers big-endian)::

    [int32 payload length][int32 message type][payload]

Message types
-------------
HEARTBEAT (0)
    Keep-alive request from the server; answered with a one-byte payload.
TIME_SYNC (1)
    Request carrying the server's send time (int64 ms).  The reply carries
    the offset ``received - sent`` and the client's current time (2 × int64).
HEARTRATE (2)
    Pushed by the client: mean, min and max BPM (3 × float64) followed by
    the result timestamp (int64).
STOP (3)
    Ends the session; answered with a one-byte payload before disconnecting.

The client runs a reader loop answering server requests and a delivery
thread draining a bounded queue of results.  :meth:`NetworkClient.on_result`
never blocks, so the client can be registered directly as the session
listener on the frame-processing path.
"""

from __future__ import annotations

import logging
import queue
import socket
import struct
import threading
import time
from enum import IntEnum
from typing import Callable, Optional, Tuple

from face_heartbeat.types import Result

logger = logging.getLogger(__name__)

SERVER_PORT = 8080

HEADER = struct.Struct(">ii")
HEART_RATE = struct.Struct(">dddq")
TIME_SYNC_REQUEST = struct.Struct(">q")
TIME_SYNC_REPLY = struct.Struct(">qq")
ACK = b"\x00"


class MessageType(IntEnum):
    HEARTBEAT = 0
    TIME_SYNC = 1
    HEARTRATE = 2
    STOP = 3


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def encode_message(msg_type: MessageType, payload: bytes) -> bytes:
    if not payload:
        raise ValueError("Message should have content.")
    return HEADER.pack(len(payload), int(msg_type)) + payload


def encode_heart_rate(result: Result) -> bytes:
    return HEART_RATE.pack(result.mean_bpm, result.min_bpm, result.max_bpm, int(result.timestamp))


def decode_heart_rate(payload: bytes) -> Result:
    mean_bpm, min_bpm, max_bpm, timestamp = HEART_RATE.unpack(payload)
    return Result(timestamp=timestamp, mean_bpm=mean_bpm, min_bpm=min_bpm, max_bpm=max_bpm)


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """Read exactly *size* bytes; ``EOFError`` if the peer closes first."""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            raise EOFError("Connection closed by peer.")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_message(sock: socket.socket) -> Tuple[int, bytes]:
    """Read one message and return ``(raw type, payload)``."""
    length, msg_type = HEADER.unpack(recv_exact(sock, HEADER.size))
    if length < 0:
        raise ValueError(f"Negative message length {length}")
    payload = recv_exact(sock, length) if length else b""
    return msg_type, payload


def current_millis() -> int:
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class NetworkStateListener:
    """Connection state hooks; override the ones you need."""

    def on_trying_to_connect(self) -> None:
        pass

    def on_connected(self) -> None:
        pass

    def on_disconnected(self) -> None:
        pass

    def on_connect_exception(self) -> None:
        pass


class NetworkClient:
    """
    Parameters
    ----------
    address:
        Host name or IP of the result server.
    port:
        Server port (default 8080).
    listener:
        Optional :class:`NetworkStateListener`.
    queue_size:
        Results kept while the connection is busy; the oldest is dropped
        when full.
    clock:
        Millisecond wall clock used for time synchronisation.
    """

    def __init__(
        self,
        address: str,
        port: int = SERVER_PORT,
        listener: Optional[NetworkStateListener] = None,
        queue_size: int = 64,
        clock: Callable[[], int] = current_millis,
        connect_timeout: float = 5.0,
        poll_interval: float = 0.2,
    ) -> None:
        self.address = address
        self.port = port
        self.listener = listener or NetworkStateListener()
        self.clock = clock
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval

        self._queue: "queue.Queue[Result]" = queue.Queue(maxsize=queue_size)
        self._active = threading.Event()
        self._send_lock = threading.Lock()
        self._sock: Optional[socket.socket] = None

    @property
    def is_active(self) -> bool:
        return self._active.is_set()

    # ------------------------------------------------------------------
    # Result listener
    # ------------------------------------------------------------------

    def on_result(self, result: Result) -> None:
        """Queue *result* for delivery without blocking."""
        while True:
            try:
                self._queue.put_nowait(result)
                return
            except queue.Full:
                try:
                    dropped = self._queue.get_nowait()
                    logger.warning("Result queue full, dropping result at t=%d", dropped.timestamp)
                except queue.Empty:
                    pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> threading.Thread:
        """Run the client on a background thread and return it."""
        thread = threading.Thread(target=self.run, name="NetworkClientThread", daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        """Ask the client to disconnect."""
        self._active.clear()
        sock = self._sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    def run(self) -> None:
        """Connect and serve until stopped, asked to stop, or disconnected."""
        self._active.set()
        try:
            self.listener.on_trying_to_connect()
            sock = socket.create_connection((self.address, self.port), timeout=self.connect_timeout)
        except OSError as exc:
            logger.error(
                "Cannot connect to %s:%d.  Wrong address or no server running? (%s)",
                self.address, self.port, exc,
            )
            self._active.clear()
            self.listener.on_connect_exception()
            return

        sock.settimeout(None)
        self._sock = sock
        logger.info("Connection established to %s:%d", self.address, self.port)
        delivery = threading.Thread(
            target=self._deliver, name="ResultDeliveryThread", daemon=True
        )
        try:
            self.listener.on_connected()
            delivery.start()
            self._serve(sock)
        except EOFError as exc:
            logger.info("Server closed the connection: %s", exc)
        except (OSError, ValueError) as exc:
            if self._active.is_set():
                logger.error("Error communicating with server: %s", exc)
        finally:
            logger.info("Stopping the client…")
            self._active.clear()
            if delivery.is_alive():
                delivery.join(timeout=2 * self.poll_interval + 1.0)
            self._sock = None
            sock.close()
            self.listener.on_disconnected()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _serve(self, sock: socket.socket) -> None:
        while self._active.is_set():
            raw_type, payload = read_message(sock)
            received = self.clock()
            try:
                msg_type = MessageType(raw_type)
            except ValueError:
                logger.error("Message type %d not recognised.", raw_type)
                continue

            if msg_type is MessageType.HEARTBEAT:
                logger.debug("Received heartbeat request")
                self._send(MessageType.HEARTBEAT, ACK)
            elif msg_type is MessageType.TIME_SYNC:
                if len(payload) < TIME_SYNC_REQUEST.size:
                    logger.error("Time synchronisation request too short (%d bytes).", len(payload))
                    continue
                (sent_by_server,) = TIME_SYNC_REQUEST.unpack(payload[:TIME_SYNC_REQUEST.size])
                offset = received - sent_by_server
                self._send(MessageType.TIME_SYNC, TIME_SYNC_REPLY.pack(offset, self.clock()))
                logger.info("Answered time synchronisation request (offset=%d ms)", offset)
            elif msg_type is MessageType.STOP:
                logger.info("Received stop request")
                self._send(MessageType.STOP, ACK)
                self._active.clear()
            else:
                logger.error("Unexpected %s message from server.", msg_type.name)

    def _deliver(self) -> None:
        while self._active.is_set():
            try:
                result = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            try:
                self._send(MessageType.HEARTRATE, encode_heart_rate(result))
            except OSError as exc:
                logger.error("Failed to send heart rate: %s", exc)

    def _send(self, msg_type: MessageType, payload: bytes) -> None:
        sock = self._sock
        if sock is None:
            raise OSError("Not connected.")
        with self._send_lock:
            sock.sendall(encode_message(msg_type, payload))
