from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel
from typing import List
import jwt
from datetime import datetime, timedelta, timezone
from exam_engine.core.config import settings

STUDENT, INSTRUCTOR, ADMIN = "student", "instructor", "admin"

class TokenData(BaseModel):
    sub: str
    roles: List[str]

    def has_role(self, *roles: str) -> bool:
        return bool(set(self.roles).intersection(roles))

    @property
    def is_staff(self) -> bool:
        return self.has_role(INSTRUCTOR, ADMIN)

bearer = HTTPBearer()

def create_token(user_id: str, roles: List[str], ttl_minutes: int = settings.ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "roles": roles, "iat": int(now.timestamp()), "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp())}
    return jwt.encode(payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer)) -> TokenData:
    try:
        payload = jwt.decode(creds.credentials, settings.SECRET_KEY.get_secret_value(), algorithms=[settings.ALGORITHM])
        return TokenData(sub=payload["sub"], roles=payload.get("roles", []))
    except (jwt.PyJWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")

def require_roles(*required: str):
    def checker(user: TokenData = Depends(get_current_user)):
        if not user.has_role(*required):
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user
    return checker
