from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from bson import ObjectId
from bson.errors import InvalidId

from utils.jwt import read_actor_claims
from utils.errors import PermissionDeniedError
from database import get_db

security = HTTPBearer()

# role claim -> collection holding that actor
ROLE_COLLECTIONS = {
    "user": "users",
    "admin": "users",
    "driver": "drivers",
    "seller": "sellers",
    "promotor": "promotors",
}


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=message,
    )


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db=Depends(get_db),
):
    try:
        subject, role = read_actor_claims(credentials.credentials)
    except JWTError:
        raise _unauthorized("Invalid or expired token")

    try:
        actor_id = ObjectId(subject)
    except (InvalidId, TypeError):
        raise _unauthorized("Invalid token subject")

    actor = await db[ROLE_COLLECTIONS[role]].find_one({"_id": actor_id})
    if not actor:
        raise _unauthorized("Account not found")

    # users/admins share a collection; the stored role wins
    if ROLE_COLLECTIONS[role] == "users" and actor.get("role", "user") != role:
        raise _unauthorized("Token role does not match account")

    if actor.get("is_active") is False:
        raise PermissionDeniedError("Account is disabled")

    actor["_role"] = role
    return actor


def require_role(required_role: str):
    async def checker(actor=Depends(get_current_actor)):
        if actor["_role"] != required_role:
            raise PermissionDeniedError(
                "Insufficient permissions",
                required_role=required_role,
            )
        return actor

    return checker
