from datetime import datetime, timedelta
from jose import jwt, JWTError
from config.env import JWT_SECRET, JWT_ALGORITHM, ACCESS_TOKEN_DAYS

# Buyers, drivers, sellers, promotors and admins sign in through the
# auth service; this API only verifies the bearer token it issued.
ACTOR_ROLES = ("user", "admin", "driver", "seller", "promotor")


def _signing_key() -> str:
    secret = (JWT_SECRET or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret


def issue_actor_token(actor_id, role: str, *, days: int = ACCESS_TOKEN_DAYS) -> str:
    if role not in ACTOR_ROLES:
        raise ValueError(f"Unknown actor role: {role}")
    issued = datetime.utcnow()
    claims = {"sub": str(actor_id), "role": role, "iat": issued, "exp": issued + timedelta(days=days)}
    return jwt.encode(claims, _signing_key(), algorithm=JWT_ALGORITHM)


def read_actor_claims(token: str) -> tuple[str, str]:
    """Return (actor_id, role); raises JWTError for anything unusable."""
    claims = jwt.decode(token, _signing_key(), algorithms=[JWT_ALGORITHM])
    subject, role = claims.get("sub"), claims.get("role")
    if not subject or role not in ACTOR_ROLES:
        raise JWTError("Token does not name an actor")
    return subject, role
