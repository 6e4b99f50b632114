import jwt
from datetime import datetime, timedelta, timezone
from fastapi import HTTPException, Request
from practicum.config import settings

# Tokens are issued by the platform's identity service; this service only
# verifies them and reads the actor id and role.
JWT_SECRET = settings.jwt_secret
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 72

ROLES = ("student", "professor", "admin")
STAFF_ROLES = ("professor", "admin")


def create_token(user_id: int, role: str = "student") -> str:
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRY_HOURS),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(request: Request) -> dict:
    """Extract the acting user from the JWT token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Empty token")

    payload = decode_token(token)
    try:
        user_id = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token subject")

    role = payload.get("role") or "student"
    if role not in ROLES:
        raise HTTPException(status_code=403, detail=f"Unknown role '{role}'")
    return {"id": user_id, "role": role}


def is_staff(user: dict) -> bool:
    return user["role"] in STAFF_ROLES


# ── Convenience helpers for route-level auth ────────────────────────

def require_role(*allowed_roles: str):
    """Return a dependency that checks the user has one of the allowed roles.

    Usage in a route:
        user = await require_role("professor", "admin")(request)
    """
    async def _check(request: Request) -> dict:
        user = await get_current_user(request)
        if user["role"] not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Required role: {', '.join(allowed_roles)}",
            )
        return user
    return _check


require_staff = require_role(*STAFF_ROLES)


async def require_student_owner(request: Request, student_id: int) -> dict:
    """Students may only read their own records; staff may read any."""
    user = await get_current_user(request)
    if user["role"] == "student" and user["id"] != student_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return user


def owner_scope(user: dict) -> int | None:
    """Student id to restrict session/feedback lookups to (None for staff)."""
    return None if is_staff(user) else user["id"]
