from datetime import datetime
from decimal import Decimal


def _serialize_value(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict) -> dict:
    if not doc:
        return doc

    return {k: _serialize_value(v) for k, v in doc.items()}


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]
