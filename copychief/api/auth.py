"""Authentication endpoints: signup, login, token refresh, account info."""

import logging
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from copychief.config import settings
from copychief.database import get_db
from copychief.models import Account

logger = logging.getLogger(__name__)
router = APIRouter()
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGORITHM = "HS256"

# --- Rate limiting ---

_rate_limit_store: dict[str, list[float]] = defaultdict(list)


def _check_rate_limit(key: str, max_attempts: int, window_seconds: int = 60) -> None:
    now = time.monotonic()
    cutoff = now - window_seconds
    _rate_limit_store[key] = [t for t in _rate_limit_store[key] if t > cutoff]
    if len(_rate_limit_store[key]) >= max_attempts:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many attempts. Try again in {window_seconds} seconds.",
        )
    _rate_limit_store[key].append(now)


# --- JWT helpers ---

def create_access_token(account_id: int, expires_minutes: int | None = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or settings.access_token_expire_minutes
    )
    return jwt.encode(
        {"sub": str(account_id), "exp": expire, "iat": datetime.now(timezone.utc)},
        settings.secret_key,
        algorithm=ALGORITHM,
    )


def decode_access_token(token: str) -> int | None:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
        account_id = payload.get("sub")
        return int(account_id) if account_id else None
    except (JWTError, ValueError):
        return None


# --- Dependencies ---

async def _load_account(token: str, db: AsyncSession) -> Account:
    account_id = decode_access_token(token)
    if account_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = await db.execute(select(Account).where(Account.id == account_id))
    account = result.scalar_one_or_none()
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account not found")
    if not account.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account inactive")
    return account


async def get_current_account(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Extract and validate the current account from the bearer JWT."""
    return await _load_account(credentials.credentials, db)


async def get_stream_account(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_security),
    token: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Auth for the event stream: bearer header, or ``?token=`` for EventSource clients."""
    raw = credentials.credentials if credentials else token
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return await _load_account(raw, db)


async def get_admin_account(account: Account = Depends(get_current_account)) -> Account:
    if not account.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return account


# --- Request/Response schemas ---

class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=72)
    full_name: str | None = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class AccountResponse(BaseModel):
    id: int
    email: str
    full_name: str | None
    is_admin: bool
    monthly_allowance: int
    created_at: datetime


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        full_name=account.full_name,
        is_admin=account.is_admin,
        monthly_allowance=account.monthly_allowance,
        created_at=account.created_at,
    )


def _token_response(account_id: int) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(account_id),
        expires_in=settings.access_token_expire_minutes * 60,
    )


# --- Endpoints ---

@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def signup(request: SignupRequest, raw: Request, db: AsyncSession = Depends(get_db)):
    """Create an account with the default monthly token allowance."""
    client_ip = raw.client.host if raw.client else "unknown"
    _check_rate_limit(f"signup:{client_ip}", max_attempts=5, window_seconds=300)

    existing = await db.execute(select(Account).where(Account.email == request.email))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=400, detail="Email already registered")

    allowance = settings.default_monthly_tokens
    account = Account(
        email=request.email,
        hashed_password=pwd_context.hash(request.password),
        full_name=request.full_name,
        monthly_allowance=allowance,
        monthly_tokens=allowance,
        tokens_reset_at=datetime.now(timezone.utc),
    )
    db.add(account)
    await db.commit()
    await db.refresh(account)

    logger.info("Account signed up: %d %s (%d tokens)", account.id, account.email, allowance)
    return _token_response(account.id)


@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest, raw: Request, db: AsyncSession = Depends(get_db)):
    """Log in with email and password."""
    client_ip = raw.client.host if raw.client else "unknown"
    _check_rate_limit(f"login:{client_ip}", max_attempts=10, window_seconds=60)

    result = await db.execute(select(Account).where(Account.email == request.email))
    account = result.scalar_one_or_none()

    if not account or not pwd_context.verify(request.password, account.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not account.is_active:
        raise HTTPException(status_code=403, detail="Account inactive")

    logger.info("Account logged in: %d %s", account.id, account.email)
    return _token_response(account.id)


@router.get("/me", response_model=AccountResponse)
async def get_me(account: Account = Depends(get_current_account)):
    return _account_response(account)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(account: Account = Depends(get_current_account)):
    """Refresh an expiring JWT."""
    return _token_response(account.id)
