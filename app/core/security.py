from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from typing import Annotated
from pydantic import ValidationError
import jwt

from app.core import schemas
from app.core.config import settings


# tokenUrl points at the portal login; this service never issues tokens itself
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


# Decode the token and see who is calling
async def get_current_user(
    token: Annotated[str, Depends(oauth2_scheme)],
) -> schemas.CurrentUser:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
        )
        user_id = payload.get("user_id")

        if user_id is None:
            raise credentials_exception

        return schemas.CurrentUser(
            user_id=str(user_id), role=payload.get("role") or schemas.UserRole.USER
        )

    # Expired, tampered, or carrying an unknown role
    except (jwt.PyJWTError, ValidationError):
        raise credentials_exception


async def validate_admin_role(
    current_user: Annotated[schemas.CurrentUser, Depends(get_current_user)],
):
    if current_user.role != schemas.UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have enough privileges (Admin only)",
        )
    return current_user
