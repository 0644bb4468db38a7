"""
rcon.py - Source-style remote console client
--------------------------------------------
Wire format (all integers little-endian int32):

    size | request_id | type | body | 0x00 | 0x00

`size` counts everything after itself. Every call opens a fresh TCP
connection, authenticates, runs one command and disconnects; game servers
restart their listener and a pooled socket would go stale.

Multi-packet responses are reassembled with an end marker: right after the
command an empty RESPONSE_VALUE packet with its own id is sent. The server
answers requests in order, so the echo of the marker id marks the end of
the command output.
"""

from __future__ import annotations
import asyncio
import random
import re
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import (
    RconAuthError,
    RconConnectionError,
    RconProtocolError,
    RconTimeoutError,
)
from .logging_setup import get_logger

log = get_logger("asa.launcher.rcon")

SERVERDATA_RESPONSE_VALUE = 0
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_AUTH_RESPONSE = 2
SERVERDATA_AUTH = 3

HEADER_SIZE = 8
# id + type + two terminators
MIN_PACKET_SIZE = HEADER_SIZE + 2
MAX_PACKET_SIZE = 4096
MAX_BODY_LENGTH = MAX_PACKET_SIZE - MIN_PACKET_SIZE
# servers may send oversized frames for long player lists
MAX_INCOMING_SIZE = 1 << 20

AUTH_FAILED_ID = -1

_PLAYER_LINE = re.compile(r"^\s*\d+\.\s*(?P<name>.+?),\s*(?P<id>\S+)\s*$")
_FIRST_INT = re.compile(r"-?\d+")


@dataclass(frozen=True)
class Packet:
    request_id: int
    type: int
    body: str = ""


def encode_packet(packet: Packet) -> bytes:
    payload = packet.body.encode("utf-8")
    if len(payload) > MAX_BODY_LENGTH:
        raise RconProtocolError(f"Body too long: {len(payload)} > {MAX_BODY_LENGTH} bytes")
    data = struct.pack("<ii", packet.request_id, packet.type) + payload + b"\x00\x00"
    return struct.pack("<i", len(data)) + data


def decode_body(data: bytes) -> Packet:
    """Decode a frame without its size prefix."""
    if len(data) < MIN_PACKET_SIZE:
        raise RconProtocolError(f"Malformed packet: {len(data)} bytes")
    if data[-2:] != b"\x00\x00":
        raise RconProtocolError("Malformed packet: missing terminators")
    req_id, ptype = struct.unpack("<ii", data[:HEADER_SIZE])
    body = data[HEADER_SIZE:-2].decode("utf-8", errors="replace")
    return Packet(request_id=req_id, type=ptype, body=body)


def decode_packet(frame: bytes) -> Packet:
    if len(frame) < 4:
        raise RconProtocolError("Malformed packet: short size prefix")
    (size,) = struct.unpack("<i", frame[:4])
    if size != len(frame) - 4:
        raise RconProtocolError(f"Size field {size} does not match frame length {len(frame) - 4}")
    return decode_body(frame[4:])


async def read_packet(reader: asyncio.StreamReader) -> Packet:
    raw_len = await reader.readexactly(4)
    (size,) = struct.unpack("<i", raw_len)
    if size < MIN_PACKET_SIZE or size > MAX_INCOMING_SIZE:
        raise RconProtocolError(f"Invalid packet size {size}")
    return decode_body(await reader.readexactly(size))


def parse_players(text: str) -> List[str]:
    """Parse ASA `ListPlayers` output ("0. Name, EOSID" per line)."""
    if not text or "no players connected" in text.lower():
        return []
    players = []
    for line in text.splitlines():
        m = _PLAYER_LINE.match(line)
        if m:
            players.append(m.group("name"))
    return players


@dataclass
class RconSession:
    """One connection: auth, command, end marker, close."""
    host: str
    port: int
    password: str
    reader: Optional[asyncio.StreamReader] = None
    writer: Optional[asyncio.StreamWriter] = None
    pending: Dict[int, str] = field(default_factory=dict)
    _next_id: int = field(default_factory=lambda: random.randint(1, 1 << 20))

    def next_id(self, purpose: str) -> int:
        self._next_id += 1
        self.pending[self._next_id] = purpose
        return self._next_id

    async def send(self, packet: Packet) -> None:
        if self.writer is None:
            raise RconConnectionError(f"RCON session to {self.host}:{self.port} is not connected")
        self.writer.write(encode_packet(packet))
        try:
            await self.writer.drain()
        except (ConnectionError, OSError) as e:
            raise RconConnectionError(f"RCON send to {self.host}:{self.port} failed: {e}") from e

    async def close(self) -> None:
        if self.writer is None:
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            log.debug("RCON close %s:%s: %s", self.host, self.port, e)
        self.writer = None
        self.reader = None
        self.pending.clear()


class RconClient:
    def __init__(self, host: str, port: int, password: str, *,
                 connect_timeout: float = 5.0, read_timeout: float = 10.0,
                 day_command: str = "GetDay"):
        self.host = host
        self.port = int(port)
        self.password = password
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.day_command = day_command

    async def _connect(self) -> RconSession:
        session = RconSession(self.host, self.port, self.password)
        try:
            session.reader, session.writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise RconTimeoutError(f"RCON connect to {self.host}:{self.port} timed out") from e
        except (ConnectionError, OSError) as e:
            raise RconConnectionError(f"RCON connect to {self.host}:{self.port} failed: {e}") from e
        return session

    async def _read(self, session: RconSession) -> Packet:
        if session.reader is None:
            raise RconConnectionError(f"RCON session to {self.host}:{self.port} is not connected")
        try:
            return await asyncio.wait_for(read_packet(session.reader), timeout=self.read_timeout)
        except asyncio.TimeoutError as e:
            raise RconTimeoutError(f"RCON read from {self.host}:{self.port} timed out") from e
        except asyncio.IncompleteReadError as e:
            raise RconConnectionError(f"RCON connection to {self.host}:{self.port} closed by remote") from e
        except (ConnectionError, OSError) as e:
            raise RconConnectionError(f"RCON read from {self.host}:{self.port} failed: {e}") from e

    async def _authenticate(self, session: RconSession) -> None:
        req_id = session.next_id("auth")
        await session.send(Packet(req_id, SERVERDATA_AUTH, self.password))
        while True:
            pkt = await self._read(session)
            # Source servers send an empty RESPONSE_VALUE ahead of the auth response
            if pkt.type == SERVERDATA_RESPONSE_VALUE and pkt.request_id == req_id:
                continue
            if pkt.type != SERVERDATA_AUTH_RESPONSE:
                raise RconProtocolError(f"Unexpected packet type {pkt.type} during auth")
            if pkt.request_id == AUTH_FAILED_ID:
                raise RconAuthError(f"RCON authentication failed for {self.host}:{self.port}")
            if pkt.request_id != req_id:
                raise RconProtocolError(f"Auth response id {pkt.request_id} != {req_id}")
            session.pending.pop(req_id, None)
            return

    async def _execute(self, session: RconSession, command: str) -> str:
        cmd_id = session.next_id("command")
        marker_id = session.next_id("end-marker")
        await session.send(Packet(cmd_id, SERVERDATA_EXECCOMMAND, command))
        await session.send(Packet(marker_id, SERVERDATA_RESPONSE_VALUE, ""))

        chunks: List[str] = []
        while True:
            pkt = await self._read(session)
            if pkt.request_id == AUTH_FAILED_ID:
                raise RconAuthError("RCON session lost authentication")
            if pkt.request_id == marker_id:
                session.pending.pop(marker_id, None)
                break
            if pkt.request_id == cmd_id and pkt.type == SERVERDATA_RESPONSE_VALUE:
                chunks.append(pkt.body)
                continue
            log.debug("RCON ignoring packet id=%s type=%s", pkt.request_id, pkt.type)
        session.pending.pop(cmd_id, None)
        return "".join(chunks)

    async def execute(self, command: str) -> str:
        """connect -> authenticate -> execute -> disconnect"""
        session = await self._connect()
        try:
            await self._authenticate(session)
            out = await self._execute(session, command)
        finally:
            await session.close()
        log.debug("RCON %s:%s %r -> %d chars", self.host, self.port, command, len(out))
        return out

    # --- helpers ---

    async def list_players(self) -> List[str]:
        return parse_players(await self.execute("ListPlayers"))

    async def save_world(self) -> str:
        return await self.execute("SaveWorld")

    async def broadcast(self, message: str) -> str:
        return await self.execute(f"Broadcast {message}")

    async def server_chat(self, message: str) -> str:
        return await self.execute(f"ServerChat {message}")

    async def get_day(self) -> Optional[int]:
        out = await self.execute(self.day_command)
        m = _FIRST_INT.search(out or "")
        return int(m.group(0)) if m else None


def client_for(settings, server) -> RconClient:
    """RconClient for a ServerConfig (RCON password is the admin password)."""
    return RconClient(
        settings.rcon_host,
        server.rcon_port,
        server.rcon_password,
        connect_timeout=settings.rcon_connect_timeout,
        read_timeout=settings.rcon_read_timeout,
        day_command=settings.rcon_day_command,
    )
