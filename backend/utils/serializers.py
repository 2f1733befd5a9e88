from bson import ObjectId
from datetime import datetime


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict | None, *, hide: tuple = ()) -> dict | None:
    if not doc:
        return doc

    doc = {k: v for k, v in doc.items() if k not in hide}
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return serialize_value(doc)


def serialize_docs(docs, *, hide: tuple = ()):
    return [serialize_doc(d, hide=hide) for d in docs]


def serialize_order(order: dict, *, include_secret: bool = False) -> dict:
    hide = () if include_secret else ("secret_code",)
    return serialize_doc(order, hide=hide)
