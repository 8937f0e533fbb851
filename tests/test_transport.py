import pytest
from aiohttp import WSMsgType, web

from conftest import CAMERAS, TrackingSource, wait_until

from camstream.errors import TransportFailed
from camstream.sessions.registry import SessionRegistry
from camstream.sessions.streaming import StreamingSessionManager, TransportMode
from camstream.transport import AiohttpTransportFactory


def build_consumer_app(received, uploads):
    async def ws_handler(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            if msg.type == WSMsgType.BINARY:
                received.append(msg.data)
                if msg.data == b"bye":
                    await ws.close()
        return ws

    async def chunk_handler(request):
        form = await request.post()
        uploads.append({
            "chunk": form["chunk"].file.read(),
            "filename": form["chunk"].filename,
            "streamId": form["streamId"],
            "timestamp": form["timestamp"],
        })
        return web.json_response({"success": True})

    async def failing_handler(request):
        return web.Response(status=500)

    app = web.Application()
    app.router.add_get("/ws", ws_handler)
    app.router.add_post("/chunk", chunk_handler)
    app.router.add_post("/broken", failing_handler)
    return app


@pytest.fixture
async def consumer(aiohttp_server):
    received, uploads = [], []
    server = await aiohttp_server(build_consumer_app(received, uploads))
    return server, received, uploads


@pytest.mark.asyncio
async def test_push_channel_delivers_frames(consumer):
    server, received, _ = consumer
    factory = AiohttpTransportFactory(connect_timeout=2)

    channel = await factory.open_push_channel(str(server.make_url("/ws")))
    assert channel.is_open

    await channel.send(b"frame-1")
    await channel.send(b"frame-2")
    assert await wait_until(lambda: len(received) == 2)
    assert received == [b"frame-1", b"frame-2"]

    await channel.close()
    await channel.close()
    assert not channel.is_open
    with pytest.raises(TransportFailed):
        await channel.send(b"frame-3")


@pytest.mark.asyncio
async def test_push_channel_notices_peer_close(consumer):
    server, _, _ = consumer
    channel = await AiohttpTransportFactory(connect_timeout=2).open_push_channel(str(server.make_url("/ws")))

    await channel.send(b"bye")
    assert await wait_until(lambda: not channel.is_open)
    await channel.close()


@pytest.mark.asyncio
async def test_unreachable_push_target_raises():
    factory = AiohttpTransportFactory(connect_timeout=1)
    with pytest.raises(TransportFailed):
        await factory.open_push_channel("ws://127.0.0.1:1/stream")


@pytest.mark.asyncio
async def test_fallback_channel_posts_multipart_chunks(consumer):
    server, _, uploads = consumer
    factory = AiohttpTransportFactory(connect_timeout=2)

    channel = await factory.open_fallback_channel(str(server.make_url("/chunk")), "stream_1_camera1")
    await channel.send(b"\xff\xd8segment", timestamp=1700000000.5)
    await channel.close()

    assert uploads == [{
        "chunk": b"\xff\xd8segment",
        "filename": "chunk.jpg",
        "streamId": "stream_1_camera1",
        "timestamp": "1700000000500",
    }]
    with pytest.raises(TransportFailed):
        await channel.send(b"after close")


@pytest.mark.asyncio
async def test_fallback_channel_reports_http_errors(consumer):
    server, _, _ = consumer
    channel = await AiohttpTransportFactory(connect_timeout=2).open_fallback_channel(
        str(server.make_url("/broken")), "stream_1_camera1"
    )
    try:
        with pytest.raises(TransportFailed):
            await channel.send(b"segment")
    finally:
        await channel.close()


@pytest.mark.asyncio
async def test_fallback_channel_reports_connection_errors():
    channel = await AiohttpTransportFactory(connect_timeout=1).open_fallback_channel(
        "http://127.0.0.1:1/chunk", "stream_1_camera1"
    )
    try:
        with pytest.raises(TransportFailed):
            await channel.send(b"segment")
    finally:
        await channel.close()


def make_stream_manager(server, push_path):
    registry = SessionRegistry(CAMERAS)
    return StreamingSessionManager(
        registry,
        AiohttpTransportFactory(connect_timeout=2),
        source_opener=lambda config: TrackingSource(),
        refresh_rate_hz=100,
        fallback_interval_seconds=0.02,
        push_url_template=str(server.make_url(push_path)) + "?stream={stream_id}",
        fallback_url=str(server.make_url("/chunk")),
    )


@pytest.mark.asyncio
async def test_stream_relays_to_websocket_consumer(consumer):
    server, received, uploads = consumer
    manager = make_stream_manager(server, "/ws")

    ticket = await manager.start("camera1")
    assert await wait_until(lambda: len(received) >= 3)
    assert received[0][:2] == b"\xff\xd8"
    assert manager.transport_state(ticket.stream_id) == TransportMode.PRIMARY

    await manager.stop(ticket.stream_id)
    assert uploads == []
    manager.registry.shutdown()


@pytest.mark.asyncio
async def test_stream_falls_back_to_chunk_uploads(consumer):
    server, received, uploads = consumer
    manager = make_stream_manager(server, "/no-websocket-here")

    ticket = await manager.start("camera1")
    assert await wait_until(lambda: len(uploads) >= 2)
    assert {upload["streamId"] for upload in uploads} == {ticket.stream_id}
    assert manager.transport_state(ticket.stream_id) == TransportMode.FALLBACK

    await manager.stop(ticket.stream_id)
    assert received == []
    manager.registry.shutdown()
