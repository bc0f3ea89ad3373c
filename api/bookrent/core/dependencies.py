"""FastAPI dependencies for injection into route handlers."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.auth import ACCESS_TOKEN, decode_token
from bookrent.core.config import Settings, settings
from bookrent.core.database import get_db
from bookrent.models.user import User
from bookrent.services.gateway import PaymentLinkGateway

bearer_scheme = HTTPBearer(auto_error=False)


def get_settings() -> Settings:
    """The configuration handed to the payment services. Tests override this."""
    return settings


def get_gateway(app_settings: Settings = Depends(get_settings)) -> PaymentLinkGateway:
    return PaymentLinkGateway(app_settings)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the current user from the JWT bearer token."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
        if payload.get("type") != ACCESS_TOKEN:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
        user_id = int(payload["sub"])
    except (JWTError, KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from None

    result = await db.execute(select(User).where(User.id == user_id, User.is_active.is_(True)))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    return user


async def require_staff(user: User = Depends(get_current_user)) -> User:
    """Require a role that may operate on payments (admin or staff)."""
    if not user.can_operate_payments:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin or staff access required")
    return user
