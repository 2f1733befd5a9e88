from bson import ObjectId
from bson.errors import InvalidId

from utils.errors import NotFoundError, PermissionDeniedError, ValidationError
from utils.mongo import with_session

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value, name: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {name}", field=name, value=str(value))


async def get_or_404(collection, oid, name: str, session=None) -> dict:
    doc = await collection.find_one({"_id": oid}, **with_session(session))
    if not doc:
        raise NotFoundError(f"{name} not found", entity=name, id=str(oid))
    return doc


# -------------------------------
# Assignment Guard
# -------------------------------

def assert_assigned_driver(order: dict, driver: dict):
    if order.get("driver_id") != driver["_id"]:
        raise PermissionDeniedError(
            "You are not assigned to this order",
            order_id=str(order["_id"]),
        )
