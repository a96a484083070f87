from bson import ObjectId
from datetime import datetime

# Stored encrypted, never returned by the API.
HIDDEN_FIELDS = {"accountNumberEncrypted"}


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict | None) -> dict | None:
    if not doc:
        return doc

    out = {}
    for k, v in doc.items():
        if k in HIDDEN_FIELDS:
            continue
        out["id" if k == "_id" else k] = serialize_value(v)
    return out


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]
