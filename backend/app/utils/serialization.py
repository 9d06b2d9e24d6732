"""MongoDB document serialization and response envelope utilities."""

import math

from bson import ObjectId
from pydantic import BaseModel


def serialize_doc(doc):
    """Convert MongoDB document to JSON-safe dict"""
    if doc is None:
        return None
    if isinstance(doc, BaseModel):
        return doc.model_dump(mode="json")
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, dict):
        result = {}
        for key, value in doc.items():
            if key == "_id":
                continue  # Skip _id entirely
            elif isinstance(value, ObjectId):
                result[key] = str(value)
            elif isinstance(value, (dict, list, BaseModel)):
                result[key] = serialize_doc(value)
            else:
                result[key] = value
        return result
    return doc


def pagination_meta(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0
    }


def success_response(data=None, pagination: dict = None, message: str = None) -> dict:
    """Wrap a payload in the standard ``{success, data, pagination?}`` envelope"""
    body = {"success": True, "data": serialize_doc(data)}
    if pagination is not None:
        body["pagination"] = pagination
    if message:
        body["message"] = message
    return body
