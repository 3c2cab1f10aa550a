"""Calling side of ``POST /coach/stream``.

Prose is delivered append-only through ``on_text_chunk``; the trailing tool
block is held back, parsed once the body is complete, and handed to
``on_plan`` exactly once. Marker bytes never reach the text callback, even
when the marker is split across network chunks.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from aura_coach.client.ui_state import CoachUIState
from aura_coach.core.wire import (
    TOOL_BLOCK_MARKER,
    ConversationRequest,
    StreamParseFailure,
    decode_tool_payload,
    marker_prefix_overlap,
)

logger = logging.getLogger(__name__)
CLIENT_TIMEOUT_SECONDS = 30.0


class SendStatus(str, Enum):
    completed = "completed"
    limit_reached = "limit_reached"
    timeout = "timeout"
    failed = "failed"
    aborted = "aborted"


@dataclass
class SendOutcome:
    status: SendStatus
    text: str = ""
    is_final: bool = False
    plan: Any = None
    error: Optional[str] = None


class ToolBlockSplitter:
    def __init__(self) -> None:
        self._held = ""
        self._payload_parts: list[str] = []
        self.found_marker = False

    def feed(self, chunk: str) -> str:
        """Return the prose in ``chunk`` that is safe to show now."""
        if self.found_marker:
            self._payload_parts.append(chunk)
            return ""
        text = self._held + chunk
        idx = text.find(TOOL_BLOCK_MARKER)
        if idx != -1:
            self.found_marker = True
            self._held = ""
            self._payload_parts.append(text[idx + len(TOOL_BLOCK_MARKER) :])
            return text[:idx]
        keep = marker_prefix_overlap(text)
        self._held = text[len(text) - keep :] if keep else ""
        return text[: len(text) - keep]

    def finish(self) -> str:
        """Release held-back text once the body ended without completing the marker."""
        tail, self._held = self._held, ""
        return tail

    def extract_plan(self) -> Optional[Any]:
        if not self.found_marker:
            return None
        try:
            return decode_tool_payload("".join(self._payload_parts))
        except StreamParseFailure as exc:
            logger.warning("coach_client_tool_block_unparsed detail=%s", str(exc))
            return None


def _utc_date_key() -> str:
    return datetime.now(timezone.utc).date().isoformat()


@dataclass
class LocalUsageShadow:
    """Last usage figures seen from the server; only used to skip sends that would certainly be refused."""

    used: int = 0
    cap: Optional[int] = None
    date_key: Optional[str] = None
    today: Callable[[], str] = _utc_date_key

    def is_current(self) -> bool:
        return self.date_key is not None and self.date_key == self.today()

    def would_exceed(self) -> bool:
        return self.cap is not None and self.is_current() and self.used >= self.cap

    def sync(self, used: int, cap: int, date_key: str) -> None:
        self.used, self.cap, self.date_key = int(used), int(cap), str(date_key)

    def record_send(self) -> None:
        if self.is_current():
            self.used += 1


@dataclass
class _Progress:
    splitter: ToolBlockSplitter = field(default_factory=ToolBlockSplitter)
    parts: list[str] = field(default_factory=list)
    status: Optional[SendStatus] = None
    error: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(self.parts)


def _flush_held(progress: _Progress, on_text_chunk: Callable[[str], None]) -> None:
    tail = progress.splitter.finish()
    if tail:
        progress.parts.append(tail)
        on_text_chunk(tail)


def _error_detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return body.get("detail")
    return response.text[:200]


class ClientStreamConsumer:
    def __init__(
        self,
        base_url: str,
        token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = CLIENT_TIMEOUT_SECONDS,
        shadow: Optional[LocalUsageShadow] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.shadow = shadow or LocalUsageShadow()
        self._http_client = http_client
        self._task: Optional[asyncio.Task] = None
        self._abort_requested = False

    @property
    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds)) as client:
            yield client

    async def refresh_usage(self) -> LocalUsageShadow:
        async with self._http() as client:
            response = await client.get(f"{self.base_url}/usage/today", headers=self._headers)
            response.raise_for_status()
            body = response.json()
        self.shadow.sync(body["used"], body["cap"], body["date_key"])
        return self.shadow

    def abort(self) -> None:
        """Cancel the in-flight send. Text already delivered stays; no plan is surfaced."""
        task = self._task
        if task is not None and not task.done():
            self._abort_requested = True
            task.cancel()

    async def send(
        self,
        request: ConversationRequest,
        on_text_chunk: Callable[[str], None],
        on_plan: Optional[Callable[[Any], None]] = None,
    ) -> SendOutcome:
        if self.shadow.would_exceed():
            return SendOutcome(SendStatus.limit_reached, error="limit_reached")

        progress = _Progress()
        self._abort_requested = False
        self._task = asyncio.ensure_future(self._stream(request, on_text_chunk, progress))
        try:
            await asyncio.wait_for(self._task, timeout=self.timeout_seconds)
        except asyncio.CancelledError:
            if not self._abort_requested:
                raise
            _flush_held(progress, on_text_chunk)
            return SendOutcome(SendStatus.aborted, text=progress.text, error="aborted")
        except asyncio.TimeoutError:
            _flush_held(progress, on_text_chunk)
            return SendOutcome(SendStatus.timeout, text=progress.text, error="timeout")
        except httpx.TimeoutException as exc:
            _flush_held(progress, on_text_chunk)
            return SendOutcome(SendStatus.timeout, text=progress.text, error=str(exc) or "timeout")
        except httpx.HTTPError as exc:
            logger.warning("coach_client_stream_failed detail=%s", str(exc)[:200])
            _flush_held(progress, on_text_chunk)
            return SendOutcome(SendStatus.failed, text=progress.text, error=str(exc) or type(exc).__name__)
        finally:
            self._task = None

        if progress.status is not None:
            return SendOutcome(progress.status, text=progress.text, error=progress.error)

        plan = progress.splitter.extract_plan()
        if plan is not None and on_plan is not None:
            on_plan(plan)
        return SendOutcome(SendStatus.completed, text=progress.text, is_final=True, plan=plan)

    async def _stream(
        self,
        request: ConversationRequest,
        on_text_chunk: Callable[[str], None],
        progress: _Progress,
    ) -> None:
        async with self._http() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/coach/stream",
                json=request.to_payload(),
                headers=self._headers,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    detail = _error_detail(response)
                    progress.status, progress.error = self._classify_error(response.status_code, detail)
                    return
                self._sync_from_headers(response.headers)
                async for piece in response.aiter_text():
                    prose = progress.splitter.feed(piece)
                    if prose:
                        progress.parts.append(prose)
                        on_text_chunk(prose)
        _flush_held(progress, on_text_chunk)

    def _sync_from_headers(self, headers: httpx.Headers) -> None:
        try:
            self.shadow.sync(headers["X-Usage-Used"], headers["X-Usage-Cap"], headers["X-Usage-Date"])
        except (KeyError, ValueError):
            self.shadow.record_send()

    def _classify_error(self, status_code: int, detail: Any) -> tuple[SendStatus, str]:
        code = detail.get("code") if isinstance(detail, dict) else None
        if status_code == 429 or code == "limit_reached":
            if isinstance(detail, dict) and {"used", "cap", "date_key"} <= detail.keys():
                self.shadow.sync(detail["used"], detail["cap"], detail["date_key"])
            return SendStatus.limit_reached, "limit_reached"
        if status_code == 504 or code == "upstream_timeout":
            return SendStatus.timeout, "upstream_timeout"
        return SendStatus.failed, str(code or detail or f"status {status_code}")

    async def send_to_ui(self, request: ConversationRequest, ui: CoachUIState) -> SendOutcome:
        ui.begin_reply()
        outcome: Optional[SendOutcome] = None
        try:
            outcome = await self.send(request, on_text_chunk=ui.append_chunk, on_plan=ui.route_plan)
        finally:
            ui.finish_reply(outcome is not None and outcome.is_final)
        return outcome
