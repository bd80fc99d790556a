"""End-to-end sessions over loopback TCP."""

from __future__ import annotations

import asyncio
import errno
import os
import sys

import pytest

from filecast.exceptions import FileExistsConflict, TransportError
from filecast.transfer import FileReceiver, FileServer, encode_field
from filecast.transfer.protocol import ACK, FIELD_WIDTH


async def fetch_into(port, out_dir):
    return await FileReceiver(output_dir=out_dir).fetch("127.0.0.1", port)


@pytest.mark.asyncio
async def test_wire_trace_for_small_file(make_file):
    path = make_file("x.txt", b"abc")

    async with FileServer(path, host="127.0.0.1", port=0) as server:
        serving = asyncio.create_task(server.serve_forever(max_sessions=1))

        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        assert await reader.readexactly(FIELD_WIDTH) == b"0000000000000005"
        writer.write(ACK)
        assert await reader.readexactly(5) == b"x.txt"
        writer.write(ACK)
        assert await reader.readexactly(FIELD_WIDTH) == b"0000000000000003"
        writer.write(ACK)
        assert await reader.read() == b"abc"
        writer.close()
        await writer.wait_closed()

        await serving

    assert server.sessions_served == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("size", [0, 10, 200000])
async def test_receiver_gets_exact_copy(make_file, tmp_path, size):
    payload = os.urandom(size)
    path = make_file("data.bin", payload)
    out_dir = tmp_path / "out"

    async with FileServer(path, host="127.0.0.1", port=0) as server:
        serving = asyncio.create_task(server.serve_forever(max_sessions=1))
        result = await fetch_into(server.port, out_dir)
        await serving

    assert result.path == out_dir / "data.bin"
    assert result.bytes_received == size
    assert (out_dir / "data.bin").read_bytes() == payload


@pytest.mark.asyncio
async def test_output_uses_basename_only(make_file, tmp_path):
    path = make_file("nested.txt", b"hello")
    out_dir = tmp_path / "out"

    # Serve through a path that still carries directory components
    async with FileServer(path.parent / ".." / "src" / "nested.txt",
                          host="127.0.0.1", port=0) as server:
        serving = asyncio.create_task(server.serve_forever(max_sessions=1))
        result = await fetch_into(server.port, out_dir)
        await serving

    assert result.path == out_dir / "nested.txt"
    assert sorted(p.name for p in out_dir.iterdir()) == ["nested.txt"]


@pytest.mark.asyncio
async def test_same_file_served_twice_identically(make_file, tmp_path):
    payload = os.urandom(150000)
    path = make_file("twice.bin", payload)

    async with FileServer(path, host="127.0.0.1", port=0) as server:
        serving = asyncio.create_task(server.serve_forever(max_sessions=2))
        first = await fetch_into(server.port, tmp_path / "one")
        second = await fetch_into(server.port, tmp_path / "two")
        await serving

    assert first.path.read_bytes() == payload
    assert second.path.read_bytes() == payload
    assert server.sessions_served == 2
    assert server.bytes_uploaded == 2 * len(payload)


@pytest.mark.skipif(sys.platform != "linux",
                    reason="needs a filesystem that stores raw name bytes")
@pytest.mark.asyncio
async def test_non_utf8_filename_served_to_every_peer(make_file, tmp_path):
    raw_name = b"caf\xe9.bin"
    payload = os.urandom(1000)
    path = make_file(os.fsdecode(raw_name), payload)

    async with FileServer(path, host="127.0.0.1", port=0) as server:
        serving = asyncio.create_task(server.serve_forever(max_sessions=2))
        first = await fetch_into(server.port, tmp_path / "one")
        second = await fetch_into(server.port, tmp_path / "two")
        await serving

    for out_dir, result in ((tmp_path / "one", first), (tmp_path / "two", second)):
        assert os.listdir(os.fsencode(out_dir)) == [raw_name]
        assert result.path.read_bytes() == payload
    assert server.sessions_served == 2
    assert server.sessions_failed == 0


@pytest.mark.asyncio
async def test_existing_file_aborts_before_data(make_file, tmp_path):
    path = make_file("x.txt", b"new contents")
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    (out_dir / "x.txt").write_bytes(b"old")

    async with FileServer(path, host="127.0.0.1", port=0) as server:
        serving = asyncio.create_task(server.serve_forever(max_sessions=1))
        with pytest.raises(FileExistsConflict):
            await fetch_into(server.port, out_dir)
        await serving

    assert (out_dir / "x.txt").read_bytes() == b"old"
    assert server.sessions_failed == 1
    assert server.bytes_uploaded == 0


@pytest.mark.asyncio
async def test_dropped_connection_leaves_no_partial_file(stream_pair, tmp_path):
    raw_sender, recv_stream = await stream_pair()
    out_dir = tmp_path / "out"

    async def short_sender():
        await raw_sender.write_all(encode_field(6))
        await raw_sender.read_exact(1)
        await raw_sender.write_all(b"cut.gz")
        await raw_sender.read_exact(1)
        await raw_sender.write_all(encode_field(100000))
        await raw_sender.read_exact(1)
        await raw_sender.write_all(b"y" * 70000)
        await raw_sender.close()

    sending = asyncio.create_task(short_sender())
    with pytest.raises(TransportError):
        await FileReceiver(output_dir=out_dir).receive(recv_stream)
    await sending

    assert not (out_dir / "cut.gz").exists()


@pytest.mark.asyncio
async def test_server_survives_peer_that_hangs_up(make_file, tmp_path):
    payload = os.urandom(300000)
    path = make_file("big.bin", payload)

    async with FileServer(path, host="127.0.0.1", port=0) as server:
        serving = asyncio.create_task(server.serve_forever(max_sessions=3))

        # Leaves before acknowledging anything
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        await reader.readexactly(FIELD_WIDTH)
        writer.close()
        await writer.wait_closed()

        # Leaves in the middle of the data
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        await reader.readexactly(FIELD_WIDTH)
        writer.write(ACK)
        await reader.readexactly(len("big.bin"))
        writer.write(ACK)
        await reader.readexactly(FIELD_WIDTH)
        writer.write(ACK)
        await reader.readexactly(1000)
        writer.close()
        await writer.wait_closed()

        result = await fetch_into(server.port, tmp_path / "out")
        await serving

    assert result.path.read_bytes() == payload
    assert server.sessions_total == 3
    assert server.sessions_failed >= 1


@pytest.mark.asyncio
async def test_retryable_accept_error_is_retried(make_file, tmp_path, monkeypatch):
    path = make_file("r.txt", b"retry")
    loop = asyncio.get_running_loop()
    original = loop.sock_accept
    failures = []

    async def flaky_accept(sock):
        if not failures:
            failures.append(1)
            raise OSError(errno.ECONNABORTED, "Software caused connection abort")
        return await original(sock)

    monkeypatch.setattr(loop, "sock_accept", flaky_accept)

    async with FileServer(path, host="127.0.0.1", port=0) as server:
        serving = asyncio.create_task(server.serve_forever(max_sessions=1))
        result = await fetch_into(server.port, tmp_path / "out")
        await serving

    assert failures == [1]
    assert result.path.read_bytes() == b"retry"


@pytest.mark.asyncio
async def test_other_accept_errors_stop_the_server(make_file, monkeypatch):
    path = make_file("f.txt", b"x")
    loop = asyncio.get_running_loop()

    async def broken_accept(sock):
        raise OSError(errno.ENOMEM, "Cannot allocate memory")

    monkeypatch.setattr(loop, "sock_accept", broken_accept)

    async with FileServer(path, host="127.0.0.1", port=0) as server:
        with pytest.raises(OSError):
            await server.serve_forever()


@pytest.mark.asyncio
async def test_stop_interrupts_idle_accept(make_file):
    path = make_file("idle.txt", b"idle")
    server = FileServer(path, host="127.0.0.1", port=0)
    await server.start()

    serving = asyncio.create_task(server.serve_forever())
    await asyncio.sleep(0.05)
    await server.stop()
    await asyncio.wait_for(serving, timeout=5)

    assert not server.is_running
    assert not server.source.is_open
    assert server.get_stats()['sessions_served'] == 0
