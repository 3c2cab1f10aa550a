import json
import logging
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from jose import JWTError
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.orm import Session

from aura_coach.api.auth import bad_credentials, optional_oauth2_scheme
from aura_coach.core.plans import resolve_tier
from aura_coach.core.security import user_id_from_token
from aura_coach.db.models import User
from aura_coach.db.session import get_db
from aura_coach.services.conversation_log import persist_exchange
from aura_coach.services.llm import (
    AIConfigMissing,
    ModelConfig,
    StreamingLLMClient,
    UpstreamError,
    UpstreamTimeout,
    get_llm_client,
    resolve_model_config,
)
from aura_coach.core.wire import ConversationRequest
from aura_coach.services.orchestrator import StreamOrchestrator
from aura_coach.services.tools import ToolRegistry, build_default_registry
from aura_coach.services.usage_ledger import Admission, LedgerUnavailable, UsageLedger

router = APIRouter(prefix="/coach", tags=["coach"])
logger = logging.getLogger("uvicorn.error")
STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"

_DEFAULT_REGISTRY = build_default_registry()


class MessageRole(str, Enum):
    user = "user"
    assistant = "assistant"
    system = "system"


class ChatMessageIn(BaseModel):
    role: MessageRole
    content: str = Field(max_length=8000)
    timestamp: Optional[Any] = None


class CoachStreamRequest(BaseModel):
    messages: list[ChatMessageIn] = Field(min_length=1, max_length=200)
    lang: str = Field(default="sv", min_length=2, max_length=16)

    @field_validator("messages")
    @classmethod
    def require_user_message(cls, value: list[ChatMessageIn]) -> list[ChatMessageIn]:
        if not any(m.role == MessageRole.user and m.content.strip() for m in value):
            raise ValueError("At least one non-empty user message is required")
        return value

    def to_conversation(self) -> ConversationRequest:
        return ConversationRequest(
            messages=[{"role": m.role.value, "content": m.content} for m in self.messages],
            lang=self.lang.strip().lower(),
        )


def get_tool_registry() -> ToolRegistry:
    return _DEFAULT_REGISTRY


def _authenticate(db: Session, token: Optional[str]) -> User:
    if not token:
        raise bad_credentials()
    try:
        user_id = user_id_from_token(token)
    except (JWTError, ValueError):
        raise bad_credentials()
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise bad_credentials()
    return user


def _parse_body(raw: bytes) -> CoachStreamRequest:
    try:
        data = json.loads(raw or b"null")
    except json.JSONDecodeError as exc:
        raise RequestValidationError(
            [{"type": "json_invalid", "loc": ("body",), "msg": "JSON decode error", "input": None, "ctx": {"error": exc.msg}}]
        )
    try:
        return CoachStreamRequest.model_validate(data)
    except ValidationError as exc:
        raise RequestValidationError([{**err, "loc": ("body", *err["loc"])} for err in exc.errors(include_url=False)])


def _resolve_config(db: Session, user_id: int) -> ModelConfig:
    try:
        return resolve_model_config(db, user_id)
    except (AIConfigMissing, ValueError) as exc:
        logger.warning("coach_stream_ai_config_missing user_id=%s detail=%s", user_id, str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ai_config_missing", "message": "No AI provider is configured for this account."},
        )


def _admit(db: Session, user: User) -> Admission:
    tier = resolve_tier(user.plan_tier)
    try:
        admission = UsageLedger(db).check_and_consume(user.id, tier)
    except LedgerUnavailable as exc:
        logger.exception("coach_stream_ledger_unavailable user_id=%s", user.id)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "ledger_unavailable", "message": "Usage could not be verified. Please retry."},
        ) from exc
    if not admission.allowed:
        logger.info(
            "coach_stream_limit_reached user_id=%s tier=%s used=%s cap=%s",
            user.id,
            tier.value,
            admission.used_after,
            admission.cap,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "limit_reached",
                "tier": tier.value,
                "used": admission.used_after,
                "cap": admission.cap,
                "date_key": admission.date_key,
            },
        )
    return admission


@router.post("/stream")
async def coach_stream(
    request: Request,
    mode: Optional[str] = Query(default=None, max_length=16),
    token: Optional[str] = Depends(optional_oauth2_scheme),
    db: Session = Depends(get_db),
    llm_client: StreamingLLMClient = Depends(get_llm_client),
    registry: ToolRegistry = Depends(get_tool_registry),
):
    if mode == "health":
        return JSONResponse({"ok": True})

    user = await run_in_threadpool(_authenticate, db, token)
    payload = _parse_body(await request.body())
    config = await run_in_threadpool(_resolve_config, db, user.id)
    admission = await run_in_threadpool(_admit, db, user)

    orchestrator = StreamOrchestrator(
        llm=llm_client,
        registry=registry,
        config=config,
        user_id=user.id,
        log_writer=persist_exchange,
    )
    try:
        await orchestrator.open(payload.to_conversation())
    except UpstreamTimeout as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail={"code": "upstream_timeout", "message": str(exc)},
        ) from exc
    except UpstreamError as exc:
        logger.warning(
            "coach_stream_upstream_error user_id=%s status=%s detail=%s", user.id, exc.status_code, str(exc)[:220]
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "upstream_error", "message": "The coach is unavailable right now. Please retry."},
        ) from exc

    return StreamingResponse(
        orchestrator.chunks(),
        media_type=STREAM_MEDIA_TYPE,
        headers={
            "Cache-Control": "no-store",
            "X-Usage-Used": str(admission.used_after),
            "X-Usage-Cap": str(admission.cap),
            "X-Usage-Date": admission.date_key,
        },
    )
