import asyncio
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import httpx

from aura_coach.client.stream_consumer import ClientStreamConsumer, LocalUsageShadow, SendStatus
from aura_coach.client.ui_state import CoachUIState
from aura_coach.core.wire import TOOL_BLOCK_MARKER, ConversationRequest, encode_tool_block

PLAN = {"bullets": ["Skärmar av 21:30", "Läs tio sidor", "Samma väckningstid"], "question": "Vad stör din sömn mest?"}
PROSE = "Det låter jobbigt.\n1. Ett.\n2. Två.\n3. Tre.\nVad vill du börja med?"
REQUEST = ConversationRequest(messages=[{"role": "user", "content": "Jag kan inte sova"}], lang="sv")


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


async def _byte_stream(body: bytes, size: int = 5, fail: Optional[Exception] = None, stall: float = 0.0) -> AsyncIterator[bytes]:
    for start in range(0, len(body), size):
        yield body[start : start + size]
        await asyncio.sleep(0)
    if stall:
        await asyncio.sleep(stall)
    if fail is not None:
        raise fail


class _Recorder:
    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.plans: list = []

    def on_text(self, delta: str) -> None:
        self.chunks.append(delta)

    def on_plan(self, plan) -> None:
        self.plans.append(plan)


def _consumer(handler, **kwargs) -> ClientStreamConsumer:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ClientStreamConsumer("http://coach.test", token="t0k3n", http_client=http, **kwargs)


def _send(consumer: ClientStreamConsumer, recorder: _Recorder):
    return asyncio.run(consumer.send(REQUEST, recorder.on_text, recorder.on_plan))


def test_plan_delivered_once_and_marker_never_shown() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        body = (PROSE + encode_tool_block(PLAN)).encode("utf-8")
        return httpx.Response(200, content=_byte_stream(body, size=3))

    recorder = _Recorder()
    outcome = _send(_consumer(handler), recorder)

    assert seen == {"auth": "Bearer t0k3n", "path": "/coach/stream"}
    assert outcome.status == SendStatus.completed
    assert outcome.is_final
    assert "".join(recorder.chunks) == PROSE
    assert all("aura-tool" not in chunk and "\U0001f4cb" not in chunk for chunk in recorder.chunks)
    assert recorder.plans == [PLAN]
    assert outcome.plan == PLAN
    assert outcome.text == PROSE


def test_malformed_tool_json_degrades_to_prose() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = (PROSE + TOOL_BLOCK_MARKER + '{"bullets": ["a",').encode("utf-8")
        return httpx.Response(200, content=_byte_stream(body))

    recorder = _Recorder()
    outcome = _send(_consumer(handler), recorder)

    assert outcome.status == SendStatus.completed
    assert outcome.is_final
    assert outcome.plan is None
    assert recorder.plans == []
    assert "".join(recorder.chunks) == PROSE


def test_prose_only_reply() -> None:
    recorder = _Recorder()
    outcome = _send(_consumer(lambda request: httpx.Response(200, content=PROSE.encode("utf-8"))), recorder)
    assert outcome.status == SendStatus.completed
    assert "".join(recorder.chunks) == PROSE
    assert recorder.plans == []


def test_local_shadow_blocks_without_network() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, content=b"unreachable")

    shadow = LocalUsageShadow(used=20, cap=20, date_key=_today())
    recorder = _Recorder()
    outcome = _send(_consumer(handler, shadow=shadow), recorder)

    assert outcome.status == SendStatus.limit_reached
    assert calls == []
    assert recorder.chunks == [] and recorder.plans == []


def test_stale_shadow_does_not_block() -> None:
    shadow = LocalUsageShadow(used=20, cap=20, date_key="2000-01-01")
    recorder = _Recorder()
    outcome = _send(_consumer(lambda request: httpx.Response(200, content=b"ok"), shadow=shadow), recorder)
    assert outcome.status == SendStatus.completed


def test_server_limit_reached_updates_shadow() -> None:
    detail = {"code": "limit_reached", "tier": "free", "used": 20, "cap": 20, "date_key": _today()}

    consumer = _consumer(lambda request: httpx.Response(429, json={"detail": detail}))
    recorder = _Recorder()
    outcome = _send(consumer, recorder)

    assert outcome.status == SendStatus.limit_reached
    assert recorder.chunks == [] and recorder.plans == []
    assert consumer.shadow.would_exceed()


def test_gateway_timeout_and_upstream_error() -> None:
    timeout = _send(
        _consumer(lambda request: httpx.Response(504, json={"detail": {"code": "upstream_timeout"}})), _Recorder()
    )
    failed = _send(
        _consumer(lambda request: httpx.Response(502, json={"detail": {"code": "upstream_error"}})), _Recorder()
    )
    assert timeout.status == SendStatus.timeout
    assert failed.status == SendStatus.failed
    assert failed.error == "upstream_error"
    assert not timeout.is_final and not failed.is_final


def test_client_timeout_keeps_partial_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = (PROSE + encode_tool_block(PLAN)).encode("utf-8")
        return httpx.Response(200, content=_byte_stream(body[:20], size=20, stall=5.0))

    recorder = _Recorder()
    outcome = _send(_consumer(handler, timeout_seconds=0.2), recorder)

    assert outcome.status == SendStatus.timeout
    assert not outcome.is_final
    assert outcome.text == "".join(recorder.chunks)
    assert outcome.text
    assert recorder.plans == []


def test_network_failure_mid_stream_is_non_final() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = (PROSE + encode_tool_block(PLAN)).encode("utf-8")
        return httpx.Response(200, content=_byte_stream(body[:30], fail=httpx.ReadError("connection reset")))

    recorder = _Recorder()
    outcome = _send(_consumer(handler), recorder)

    assert outcome.status == SendStatus.failed
    assert not outcome.is_final
    assert outcome.text
    assert recorder.plans == []


def test_abort_mid_stream() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = (PROSE + encode_tool_block(PLAN)).encode("utf-8")
        return httpx.Response(200, content=_byte_stream(body, size=10, stall=5.0))

    consumer = _consumer(handler)
    chunks: list[str] = []
    plans: list = []

    def on_text(delta: str) -> None:
        chunks.append(delta)
        consumer.abort()

    outcome = asyncio.run(consumer.send(REQUEST, on_text, plans.append))

    assert outcome.status == SendStatus.aborted
    assert not outcome.is_final
    assert len(chunks) == 1
    assert plans == []


def test_refresh_usage_syncs_shadow() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/usage/today"
        return httpx.Response(
            200, json={"tier": "free", "used": 4, "cap": 20, "remaining": 16, "date_key": _today()}
        )

    consumer = _consumer(handler)
    shadow = asyncio.run(consumer.refresh_usage())
    assert (shadow.used, shadow.cap) == (4, 20)
    assert not shadow.would_exceed()


def test_send_to_ui_routes_plan() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_byte_stream((PROSE + encode_tool_block(PLAN)).encode("utf-8")))

    ui = CoachUIState(lang="sv")
    outcome = asyncio.run(_consumer(handler).send_to_ui(REQUEST, ui))

    assert outcome.is_final and ui.is_final and not ui.streaming
    assert ui.assistant_text == PROSE
    assert ui.current_plan == PLAN
    assert [item.text for item in ui.agenda] == list(reversed(PLAN["bullets"]))
    assert ui.memory[0].summary == PLAN["bullets"][0]


def test_non_object_error_body_leaves_ui_consistent() -> None:
    ui = CoachUIState(lang="sv")
    consumer = _consumer(lambda request: httpx.Response(502, json="Bad gateway"))

    outcome = asyncio.run(consumer.send_to_ui(REQUEST, ui))

    assert outcome.status == SendStatus.failed
    assert "Bad gateway" in outcome.error
    assert not ui.streaming and not ui.is_final
    assert ui.current_plan is None


def test_usage_headers_sync_shadow() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        headers = {"X-Usage-Used": "20", "X-Usage-Cap": "20", "X-Usage-Date": _today()}
        return httpx.Response(200, headers=headers, content=PROSE.encode("utf-8"))

    consumer = _consumer(handler)
    first = _send(consumer, _Recorder())
    second = _send(consumer, _Recorder())

    assert first.status == SendStatus.completed
    assert (consumer.shadow.used, consumer.shadow.cap) == (20, 20)
    assert second.status == SendStatus.limit_reached
    assert len(calls) == 1


def test_held_newline_kept_when_stream_breaks() -> None:
    partial = "Det låter jobbigt.\n"

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, content=_byte_stream(partial.encode("utf-8"), size=64, fail=httpx.ReadError("connection reset"))
        )

    recorder = _Recorder()
    outcome = _send(_consumer(handler), recorder)

    assert outcome.status == SendStatus.failed
    assert outcome.text == partial
    assert "".join(recorder.chunks) == partial
