"""
Tests for the RCON client against an in-process fake server speaking the wire format.
"""

import asyncio
import struct

import pytest

from asa_launcher.errors import RconAuthError, RconConnectionError, RconProtocolError, RconTimeoutError
from asa_launcher.rcon import (
    MAX_BODY_LENGTH,
    SERVERDATA_AUTH,
    SERVERDATA_AUTH_RESPONSE,
    SERVERDATA_EXECCOMMAND,
    SERVERDATA_RESPONSE_VALUE,
    Packet,
    RconClient,
    RconSession,
    decode_packet,
    encode_packet,
    parse_players,
    read_packet,
)


class FakeRconServer:
    """Minimal Source-RCON server: answers auth, commands (in chunks) and end markers."""

    def __init__(self, password="secret", responses=None, *, silent=False, fragment=False):
        self.password = password
        self.responses = responses or {}
        self.silent = silent
        self.fragment = fragment
        self.commands = []
        self.server = None
        self.port = None

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc):
        self.server.close()
        await self.server.wait_closed()

    async def _send(self, writer, packet):
        data = encode_packet(packet)
        if self.fragment:
            for i in range(0, len(data), 3):
                writer.write(data[i:i + 3])
                await writer.drain()
        else:
            writer.write(data)
            await writer.drain()

    async def _handle(self, reader, writer):
        try:
            while True:
                pkt = await read_packet(reader)
                if self.silent:
                    continue
                if pkt.type == SERVERDATA_AUTH:
                    if pkt.body == self.password:
                        await self._send(writer, Packet(pkt.request_id, SERVERDATA_RESPONSE_VALUE, ""))
                        await self._send(writer, Packet(pkt.request_id, SERVERDATA_AUTH_RESPONSE, ""))
                    else:
                        await self._send(writer, Packet(-1, SERVERDATA_AUTH_RESPONSE, ""))
                elif pkt.type == SERVERDATA_EXECCOMMAND:
                    self.commands.append(pkt.body)
                    chunks = self.responses.get(pkt.body, [""])
                    for chunk in chunks:
                        await self._send(writer, Packet(pkt.request_id, SERVERDATA_RESPONSE_VALUE, chunk))
                elif pkt.type == SERVERDATA_RESPONSE_VALUE:
                    await self._send(writer, Packet(pkt.request_id, SERVERDATA_RESPONSE_VALUE, ""))
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


class TestWireFormat:
    def test_encode_layout(self):
        data = encode_packet(Packet(7, SERVERDATA_EXECCOMMAND, "SaveWorld"))
        size, req_id, ptype = struct.unpack("<iii", data[:12])
        assert size == len(data) - 4
        assert req_id == 7
        assert ptype == SERVERDATA_EXECCOMMAND
        assert data[12:-2] == b"SaveWorld"
        assert data[-2:] == b"\x00\x00"

    def test_decode_roundtrip_edge_bodies(self):
        for body in ("", "x" * MAX_BODY_LENGTH):
            pkt = decode_packet(encode_packet(Packet(42, SERVERDATA_RESPONSE_VALUE, body)))
            assert pkt == Packet(42, SERVERDATA_RESPONSE_VALUE, body)

    def test_body_too_long_rejected(self):
        with pytest.raises(RconProtocolError):
            encode_packet(Packet(1, SERVERDATA_EXECCOMMAND, "x" * (MAX_BODY_LENGTH + 1)))

    def test_decode_rejects_size_mismatch(self):
        data = encode_packet(Packet(1, 0, "abc"))
        with pytest.raises(RconProtocolError):
            decode_packet(data + b"\x00")

    def test_decode_rejects_missing_terminators(self):
        raw = struct.pack("<ii", 1, 0) + b"abc\x00x"
        with pytest.raises(RconProtocolError):
            decode_packet(struct.pack("<i", len(raw)) + raw)


class TestParsePlayers:
    def test_no_players(self):
        assert parse_players("No Players Connected") == []
        assert parse_players("") == []

    def test_player_lines(self):
        text = "0. Alice, 0002a1b2c3\n1. Bob the Builder, 0002ffeedd\n"
        assert parse_players(text) == ["Alice", "Bob the Builder"]


class TestRconClient:
    async def test_execute_success(self):
        async with FakeRconServer(responses={"SaveWorld": ["World Saved"]}) as srv:
            client = RconClient("127.0.0.1", srv.port, "secret", read_timeout=2)
            assert await client.save_world() == "World Saved"
            assert srv.commands == ["SaveWorld"]

    async def test_auth_failure(self):
        async with FakeRconServer(password="secret") as srv:
            client = RconClient("127.0.0.1", srv.port, "wrong", read_timeout=2)
            with pytest.raises(RconAuthError):
                await client.execute("ListPlayers")
            assert srv.commands == []

    async def test_split_response_reassembled(self):
        chunks = ["0. Alice, 0002aa\n", "1. Bob, 0002bb\n", "2. Carol, 0002cc\n"]
        async with FakeRconServer(responses={"ListPlayers": chunks}) as srv:
            client = RconClient("127.0.0.1", srv.port, "secret", read_timeout=2)
            assert await client.execute("ListPlayers") == "".join(chunks)
            assert await client.list_players() == ["Alice", "Bob", "Carol"]

    async def test_fragmented_tcp_frames(self):
        async with FakeRconServer(responses={"GetDay": ["Day 123"]}, fragment=True) as srv:
            client = RconClient("127.0.0.1", srv.port, "secret", read_timeout=2)
            assert await client.get_day() == 123

    async def test_read_timeout(self):
        async with FakeRconServer(silent=True) as srv:
            client = RconClient("127.0.0.1", srv.port, "secret", read_timeout=0.2)
            with pytest.raises(RconTimeoutError):
                await client.execute("ListPlayers")

    async def test_connection_refused(self):
        srv = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        port = srv.sockets[0].getsockname()[1]
        srv.close()
        await srv.wait_closed()
        client = RconClient("127.0.0.1", port, "secret", connect_timeout=1)
        with pytest.raises((RconConnectionError, RconTimeoutError)):
            await client.execute("ListPlayers")

    async def test_broadcast_command_text(self):
        async with FakeRconServer() as srv:
            client = RconClient("127.0.0.1", srv.port, "secret", read_timeout=2)
            await client.broadcast("Server restarting")
            await client.server_chat("hi")
            assert srv.commands == ["Broadcast Server restarting", "ServerChat hi"]

    async def test_max_length_body_through_execute(self):
        body = "x" * MAX_BODY_LENGTH
        async with FakeRconServer(responses={"ListPlayers": [body]}) as srv:
            client = RconClient("127.0.0.1", srv.port, "secret", read_timeout=2)
            out = await client.execute("ListPlayers")
        assert len(out) == MAX_BODY_LENGTH == 4086
        assert out == body


class TestRconSession:
    async def test_send_without_connection(self):
        """Ohne offene Verbindung gibt es einen RCON-Fehler statt eines AssertionError."""
        session = RconSession("127.0.0.1", 1, "secret")
        with pytest.raises(RconConnectionError):
            await session.send(Packet(1, SERVERDATA_EXECCOMMAND, "ListPlayers"))

    async def test_read_without_connection(self):
        client = RconClient("127.0.0.1", 1, "secret")
        with pytest.raises(RconConnectionError):
            await client._read(RconSession("127.0.0.1", 1, "secret"))
