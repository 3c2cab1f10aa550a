from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from aura_coach.core.plans import PlanTier, plan_limit, resolve_tier
from aura_coach.core.security import (
    encrypt_api_key,
    hash_password,
    issue_access_token,
    mask_api_key,
    user_id_from_token,
    verify_password,
)
from aura_coach.db.models import User, UserAIConfig
from aura_coach.db.session import get_db

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


class AIProvider(str, Enum):
    openai = "openai"


class AIConfigInput(BaseModel):
    ai_provider: AIProvider = AIProvider.openai
    ai_model: str = Field(default="gpt-4o-mini", min_length=1, max_length=128)
    ai_api_key: str = Field(min_length=8, max_length=512)


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    ai_config: Optional[AIConfigInput] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeResponse(BaseModel):
    id: int
    email: str
    plan_tier: PlanTier
    daily_message_cap: int
    ai_configured: bool


class AIConfigResponse(BaseModel):
    ai_provider: AIProvider
    ai_model: str
    api_key_masked: str
    configured: bool = True


def bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _upsert_ai_config(db: Session, user_id: int, ai: AIConfigInput) -> UserAIConfig:
    existing = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    encrypted = encrypt_api_key(ai.ai_api_key.strip())
    if existing:
        existing.ai_provider = ai.ai_provider.value
        existing.ai_model = ai.ai_model.strip()
        existing.encrypted_api_key = encrypted
        return existing

    created = UserAIConfig(
        user_id=user_id,
        ai_provider=ai.ai_provider.value,
        ai_model=ai.ai_model.strip(),
        encrypted_api_key=encrypted,
    )
    db.add(created)
    return created


def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    try:
        user_id = user_id_from_token(token)
    except (JWTError, ValueError):
        raise bad_credentials()

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise bad_credentials()
    return user


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, db: Session = Depends(get_db)) -> TokenResponse:
    existing = db.query(User).filter(User.email == payload.email.lower()).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(email=payload.email.lower(), password_hash=hash_password(payload.password), plan_tier="free")
    db.add(user)
    db.flush()

    if payload.ai_config:
        _upsert_ai_config(db, user.id, payload.ai_config)

    db.commit()
    return TokenResponse(access_token=issue_access_token(user.id))


@router.post("/login", response_model=TokenResponse)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> TokenResponse:
    user = db.query(User).filter(User.email == form_data.username.lower()).first()
    if not user or not verify_password(form_data.password, user.password_hash):
        raise bad_credentials()
    return TokenResponse(access_token=issue_access_token(user.id))


@router.get("/me", response_model=MeResponse)
def me(user: User = Depends(get_current_user)) -> MeResponse:
    tier = resolve_tier(user.plan_tier)
    return MeResponse(
        id=user.id,
        email=user.email,
        plan_tier=tier,
        daily_message_cap=plan_limit(tier).daily_message_cap,
        ai_configured=user.ai_config is not None,
    )


@router.put("/ai-config", response_model=AIConfigResponse)
def set_ai_config(
    payload: AIConfigInput,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AIConfigResponse:
    cfg = _upsert_ai_config(db, user.id, payload)
    db.commit()
    return AIConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_model=cfg.ai_model,
        api_key_masked=mask_api_key(payload.ai_api_key.strip()),
    )


@router.get("/ai-config", response_model=AIConfigResponse)
def get_ai_config(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> AIConfigResponse:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")

    # Reads never echo key material.
    return AIConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_model=cfg.ai_model,
        api_key_masked="****...****",
    )


@router.delete("/ai-config", status_code=status.HTTP_204_NO_CONTENT)
def revoke_ai_config(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> None:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")
    db.delete(cfg)
    db.commit()
