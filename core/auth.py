from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

import bcrypt
import jwt
from fastapi import Request

from core.config import logger, GATEWAY_KEY, ACCESS_TOKEN_TTL_HOURS

if not GATEWAY_KEY:
    raise ValueError("GATEWAY_KEY environment variable is required to sign access tokens")

TOKEN_ISSUER = "portfolio.gateway"


def hash_secret(plain: str) -> str:
    return bcrypt.hashpw((plain or "").encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_secret(plain: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw((plain or "").encode("utf-8"), hashed.encode("utf-8"))
    except Exception:
        return False


def issue_access_token(uid: str, email: str, role: str) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": uid,
        "email": email,
        "role": role,
        "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=ACCESS_TOKEN_TTL_HOURS)).timestamp()),
        "iss": TOKEN_ISSUER,
    }
    return jwt.encode(payload, GATEWAY_KEY, algorithm="HS256")


def decode_access_token(token: str) -> Optional[dict]:
    if not token:
        return None
    try:
        return jwt.decode(token, GATEWAY_KEY, algorithms=["HS256"], issuer=TOKEN_ISSUER)
    except jwt.PyJWTError as ex:
        logger.warning(f"Token verification failed: {ex}")
        return None


def get_token_from_request(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None
