import jwt
from datetime import datetime, timedelta, timezone
from tablepay.config import settings


def create_token(sub: str, role: str, table_number: int | None = None) -> str:
    """Issue a bearer token the way the auth service does; used by tooling and tests."""
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=settings.JWT_EXP_MIN)
    payload = {
        "sub": sub, "role": role, "iss": settings.JWT_ISS,
        "iat": int(now.timestamp()), "exp": int(exp.timestamp()),
    }
    if table_number is not None:
        payload["table_number"] = table_number
    return jwt.encode(payload, settings.APP_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.APP_SECRET, algorithms=["HS256"], options={"verify_aud": False})
