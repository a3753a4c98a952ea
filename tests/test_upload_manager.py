"""Tests for the upload managers, using in-process httpx transports."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import httpx
import pytest

from errors import MetadataError, NetworkError, UploadCancelledError, UploadError, UploadTimeoutError
from models import Blob, ImageUploadItem, UploadStatus, UploadTask
from upload_manager import (
    CancelToken,
    ImageUploadManager,
    UploadManager,
    VoiceUploadManager,
    is_retryable_error,
)

Handler = Callable[[httpx.Request, bytes], Awaitable[httpx.Response]]

MESSAGE = {
    "id": "msg-1",
    "sender": "user-1",
    "created_at": "2026-01-01T00:00:00Z",
    "audio_path": "voice/conv-1/msg-1.webm",
}


class FakeTransport(httpx.AsyncBaseTransport):
    """Records every request, consumes its body, then defers to ``handler``."""

    def __init__(self, handler: Handler) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []
        self.bodies: list[bytes] = []
        self.started = asyncio.Event()

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = await request.aread()
        self.bodies.append(body)
        self.started.set()
        return await self.handler(request, body)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _ok(message: dict = MESSAGE) -> Handler:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        return httpx.Response(201, json={"message": message})

    return handler


async def _block_forever(request: httpx.Request, body: bytes) -> httpx.Response:
    await asyncio.Event().wait()
    raise AssertionError("unreachable")


def _voice_manager(transport: FakeTransport, **kwargs) -> VoiceUploadManager:  # noqa: ANN003
    client = httpx.AsyncClient(transport=transport)
    return VoiceUploadManager(base_url="http://test", client=client, **kwargs)


def _blob(size: int = 1024) -> Blob:
    return Blob(b"\x00" * size, "audio/webm;codecs=opus")


# ---------------------------------------------------------------
# Voice uploads
# ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_voice_upload_sends_multipart_with_auth() -> None:
    transport = FakeTransport(_ok())
    manager = _voice_manager(transport, auth_token="secret")

    result = await manager.upload_voice_message(_blob(), "voice_1.webm", "conv-1", duration=2.6, upload_id="conv-1_a")

    assert result.success is True
    assert result.upload_id == "conv-1_a"
    assert result.message_id == "msg-1"
    assert result.audio_path == "voice/conv-1/msg-1.webm"

    request = transport.requests[0]
    assert request.method == "POST"
    assert request.url == "http://test/api/voice-messages"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["Content-Type"].startswith("multipart/form-data; boundary=")
    assert int(request.headers["Content-Length"]) == len(transport.bodies[0])

    body = transport.bodies[0]
    assert b'name="audio"; filename="voice_1.webm"' in body
    assert b'name="conversationId"\r\n\r\nconv-1' in body
    assert b'name="duration"\r\n\r\n3' in body


@pytest.mark.asyncio
async def test_token_source_can_be_callable() -> None:
    transport = FakeTransport(_ok())
    manager = _voice_manager(transport, auth_token=lambda: "fresh")

    await manager.upload_voice_message(_blob(), "v.webm", "conv-1")

    assert transport.requests[0].headers["Authorization"] == "Bearer fresh"


@pytest.mark.asyncio
async def test_no_auth_header_without_token() -> None:
    transport = FakeTransport(_ok())
    manager = _voice_manager(transport)

    await manager.upload_voice_message(_blob(), "v.webm", "conv-1")

    assert "Authorization" not in transport.requests[0].headers


@pytest.mark.asyncio
async def test_default_upload_id_is_scoped_to_conversation() -> None:
    manager = _voice_manager(FakeTransport(_ok()))

    first = await manager.upload_voice_message(_blob(), "v.webm", "conv-9")
    second = await manager.upload_voice_message(_blob(), "v.webm", "conv-9")

    assert first.upload_id.startswith("conv-9_")
    assert first.upload_id != second.upload_id


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_reaches_100() -> None:
    manager = _voice_manager(FakeTransport(_ok()))
    seen: list[int] = []

    await manager.upload_voice_message(_blob(200 * 1024), "v.webm", "conv-1", on_progress=seen.append)

    assert len(seen) > 1
    assert seen == sorted(seen)
    assert seen[-1] == 100
    assert all(0 <= p <= 100 for p in seen)


@pytest.mark.asyncio
async def test_missing_metadata_fails_with_metadata_error() -> None:
    transport = FakeTransport(_ok({"id": "msg-1", "sender": "user-1"}))
    sleep = RecordingSleep()
    manager = _voice_manager(transport, sleep=sleep)

    result = await manager.upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.success is False
    assert isinstance(result.cause, MetadataError)
    assert result.message_id is None
    assert len(transport.requests) == 1
    assert sleep.delays == []
    assert manager.active_uploads == ()


@pytest.mark.asyncio
async def test_response_without_message_is_invalid() -> None:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    result = await _voice_manager(FakeTransport(handler)).upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.success is False
    assert isinstance(result.cause, MetadataError)


@pytest.mark.asyncio
async def test_server_error_message_is_surfaced() -> None:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        return httpx.Response(400, json={"error": "Conversation not found"})

    sleep = RecordingSleep()
    transport = FakeTransport(handler)
    result = await _voice_manager(transport, sleep=sleep).upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.success is False
    assert result.error == "Conversation not found"
    assert isinstance(result.cause, UploadError)
    assert result.cause.status_code == 400
    assert len(transport.requests) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_non_json_error_uses_status_message() -> None:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    result = await _voice_manager(FakeTransport(handler)).upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.error == "Upload failed with status 502"


@pytest.mark.asyncio
async def test_invalid_json_success_body() -> None:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        return httpx.Response(201, text="<html>")

    result = await _voice_manager(FakeTransport(handler)).upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.error == "Invalid response from server"


# ---------------------------------------------------------------
# Retry
# ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_network_error_is_retried_once_then_succeeds() -> None:
    calls = 0

    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(201, json={"message": MESSAGE})

    sleep = RecordingSleep()
    manager = _voice_manager(FakeTransport(handler), sleep=sleep)

    result = await manager.upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.success is True
    assert calls == 2
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_timeout_on_first_attempt_then_success() -> None:
    calls = 0

    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ReadTimeout("Network timeout", request=request)
        return httpx.Response(201, json={"message": MESSAGE})

    sleep = RecordingSleep()
    manager = _voice_manager(FakeTransport(handler), sleep=sleep)

    result = await manager.upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.success is True
    assert result.message_id == "msg-1"
    assert calls == 2
    assert sleep.delays == [1.0]
    assert manager.active_uploads == ()


@pytest.mark.asyncio
async def test_storage_quota_error_is_not_retried() -> None:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        return httpx.Response(507, json={"error": "Storage quota exceeded"})

    sleep = RecordingSleep()
    transport = FakeTransport(handler)
    result = await _voice_manager(transport, sleep=sleep).upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.success is False
    assert result.error == "Storage quota exceeded"
    assert len(transport.requests) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_persistent_timeout_gives_up_after_two_attempts() -> None:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        raise httpx.ReadTimeout("Network timeout", request=request)

    sleep = RecordingSleep()
    transport = FakeTransport(handler)
    manager = _voice_manager(transport, sleep=sleep)

    result = await manager.upload_voice_message(_blob(), "v.webm", "conv-1")

    assert result.success is False
    assert isinstance(result.cause, UploadTimeoutError)
    assert len(transport.requests) == 2
    assert sleep.delays == [1.0]
    assert manager.active_uploads == ()


@pytest.mark.asyncio
async def test_connection_failure_maps_to_network_error() -> None:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    result = await _voice_manager(FakeTransport(handler), sleep=RecordingSleep()).upload_voice_message(
        _blob(), "v.webm", "conv-1"
    )

    assert isinstance(result.cause, NetworkError)
    assert result.error == "Network error, please check your connection"


@pytest.mark.parametrize(
    "exc, expected",
    [
        (httpx.ConnectTimeout("slow"), True),
        (httpx.ConnectError("refused"), True),
        (ConnectionResetError(), True),
        (Exception("Network timeout"), True),
        (Exception("Failed to fetch"), True),
        (UploadTimeoutError("Upload timed out, please try again"), True),
        (UploadError("Upload failed with status 400", 400), False),
        (MetadataError("Server response missing required message metadata"), False),
        (Exception("Storage quota exceeded"), False),
        (UploadError("Storage quota exceeded", 507), False),
        (ValueError("bad"), False),
    ],
)
def test_is_retryable_error(exc: BaseException, expected: bool) -> None:
    assert is_retryable_error(exc) is expected


def test_is_retryable_error_by_code() -> None:
    exc = Exception("socket hang up")
    exc.code = "ECONNRESET"  # type: ignore[attr-defined]
    assert is_retryable_error(exc) is True


# ---------------------------------------------------------------
# Watchdog and cancellation
# ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_watchdog_timeout_raises_upload_timeout() -> None:
    manager = _voice_manager(FakeTransport(_block_forever), timeout_s=0.05)

    with pytest.raises(UploadTimeoutError, match="timed out"):
        await manager.upload_single_file("u1", _blob(), "v.webm")

    assert manager.active_uploads == ()


@pytest.mark.asyncio
async def test_cancel_upload_stops_transfer() -> None:
    transport = FakeTransport(_block_forever)
    manager = _voice_manager(transport)

    task = asyncio.ensure_future(manager.upload_single_file("u1", _blob(), "v.webm"))
    await transport.started.wait()
    assert manager.is_uploading("u1")

    manager.cancel_upload("u1")

    with pytest.raises(UploadCancelledError):
        await task
    assert manager.active_uploads == ()


@pytest.mark.asyncio
async def test_cancelled_voice_upload_returns_failed_result() -> None:
    transport = FakeTransport(_block_forever)
    manager = _voice_manager(transport, sleep=RecordingSleep())

    task = asyncio.ensure_future(manager.upload_voice_message(_blob(), "v.webm", "conv-1", upload_id="conv-1_x"))
    await transport.started.wait()
    manager.cancel_upload("conv-1_x")

    result = await task
    assert result.success is False
    assert isinstance(result.cause, UploadCancelledError)
    assert len(transport.requests) == 1


@pytest.mark.asyncio
async def test_cancel_all_uploads() -> None:
    transport = FakeTransport(_block_forever)
    manager = _voice_manager(transport)

    tasks = [asyncio.ensure_future(manager.upload_single_file(f"u{i}", _blob(), "v.webm")) for i in range(2)]
    while len(transport.requests) < 2:
        await asyncio.sleep(0)
    manager.cancel_all_uploads()

    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(r, UploadCancelledError) for r in results)
    assert manager.active_uploads == ()


@pytest.mark.asyncio
async def test_registry_is_empty_after_success_and_failure() -> None:
    manager = _voice_manager(FakeTransport(_ok()))
    await manager.upload_single_file("ok", _blob(), "v.webm")
    assert manager.active_uploads == ()

    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    failing = _voice_manager(FakeTransport(handler))
    with pytest.raises(UploadError):
        await failing.upload_single_file("bad", _blob(), "v.webm")
    assert failing.active_uploads == ()


def test_cancel_token_cancels_task_bound_later() -> None:
    async def scenario() -> bool:
        token = CancelToken()
        token.cancel()
        task = asyncio.ensure_future(asyncio.sleep(10))
        token.bind(task)
        await asyncio.gather(task, return_exceptions=True)
        return task.cancelled()

    assert asyncio.run(scenario()) is True


@pytest.mark.asyncio
async def test_base_manager_requires_message_object() -> None:
    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        return httpx.Response(200, json={"message": "ok"})

    manager = UploadManager(base_url="http://test", client=httpx.AsyncClient(transport=FakeTransport(handler)))
    with pytest.raises(UploadError, match="Invalid response from server"):
        await manager.upload_single_file("u1", _blob(), "f.bin")


# ---------------------------------------------------------------
# Image batches
# ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_image_batch_limits_concurrency_and_keeps_order() -> None:
    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request, body: bytes) -> httpx.Response:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        if b'filename="bad.png"' in body:
            return httpx.Response(413, json={"error": "File too large"})
        name = body.split(b'filename="', 1)[1].split(b'"', 1)[0].decode()
        return httpx.Response(201, json={"message": {"id": f"id-{name}", "image_path": f"images/{name}"}})

    transport = FakeTransport(handler)
    manager = ImageUploadManager(base_url="http://test", client=httpx.AsyncClient(transport=transport))
    names = ["a.png", "b.png", "bad.png", "c.png", "d.png", "e.png", "f.png"]
    items = [ImageUploadItem(f"file-{i}", Blob(b"\x89PNG" * 10, "image/png"), name) for i, name in enumerate(names)]
    updates: dict[str, list[UploadTask]] = {}

    results = await manager.upload_images(items, lambda file_id, task: updates.setdefault(file_id, []).append(task))

    assert peak <= 3
    assert [r.upload_id for r in results] == [item.file_id for item in items]
    assert results[0].success is True
    assert results[0].image_path == "images/a.png"
    assert results[2].success is False
    assert results[2].error == "File too large"

    assert updates["file-0"][0].status == UploadStatus.UPLOADING
    assert updates["file-0"][-1].status == UploadStatus.COMPLETE
    assert updates["file-0"][-1].progress_percent == 100
    assert updates["file-2"][-1].status == UploadStatus.ERROR
    assert updates["file-2"][-1].error_message == "File too large"
    assert transport.requests[0].url == "http://test/api/images"
    assert b'name="image"' in transport.bodies[0]
