"""Cached value serialization using orjson.

Values written to Redis are wrapped in a type envelope so that pydantic
models, tuples, sets and datetimes come back as the types that went in.
The in-process MemoryStore keeps Python objects and never uses this.
"""

from __future__ import annotations

import importlib
from datetime import date, datetime
from typing import Any, Type

import orjson
from pydantic import BaseModel


def dumps(value: Any) -> bytes:
    """Serialize a cached value to JSON bytes with a type envelope."""
    return orjson.dumps(_serialize_element(value))


def loads(raw: bytes | str) -> Any:
    """Deserialize JSON produced by ``dumps`` back to the original type."""
    return _deserialize_envelope(orjson.loads(raw))


def _serialize_element(item: Any) -> dict:
    """Serialize a single element with type envelope."""
    if isinstance(item, BaseModel):
        return {
            "_type": "pydantic",
            "_model": f"{item.__class__.__module__}.{item.__class__.__name__}",
            "data": item.model_dump(mode="json"),
        }
    elif isinstance(item, datetime):
        return {"_type": "datetime", "data": item.isoformat()}
    elif isinstance(item, date):
        return {"_type": "date", "data": item.isoformat()}
    elif isinstance(item, tuple):
        return {"_type": "tuple", "data": [_serialize_element(sub) for sub in item]}
    elif isinstance(item, (set, frozenset)):
        return {"_type": "set", "data": [_serialize_element(sub) for sub in item]}
    elif isinstance(item, list):
        return {"_type": "list", "data": [_serialize_element(sub) for sub in item]}
    elif isinstance(item, dict):
        return {
            "_type": "dict",
            "data": [[_serialize_element(k), _serialize_element(v)] for k, v in item.items()],
        }
    elif item is None or isinstance(item, (str, int, float, bool)):
        return {"_type": "plain", "data": item}
    else:
        raise TypeError(
            f"Cannot cache value of type {type(item).__name__}; "
            "return plain data or pydantic models from cached operations"
        )


def _deserialize_envelope(envelope: dict) -> Any:
    """Deserialize a single envelope dict back to its original type."""
    t = envelope["_type"]

    if t == "pydantic":
        model_cls = _resolve_model(envelope["_model"])
        return model_cls.model_validate(envelope["data"])
    elif t == "datetime":
        return datetime.fromisoformat(envelope["data"])
    elif t == "date":
        return date.fromisoformat(envelope["data"])
    elif t == "tuple":
        return tuple(_deserialize_envelope(elem) for elem in envelope["data"])
    elif t == "set":
        return {_deserialize_envelope(elem) for elem in envelope["data"]}
    elif t == "list":
        return [_deserialize_envelope(elem) for elem in envelope["data"]]
    elif t == "dict":
        return {
            _deserialize_envelope(k): _deserialize_envelope(v)
            for k, v in envelope["data"]
        }
    elif t == "plain":
        return envelope["data"]
    else:
        raise ValueError(f"Unknown cache envelope type: {t!r}")


def _resolve_model(model_path: str) -> Type[BaseModel]:
    """Resolve a Pydantic model class from its module.ClassName string."""
    module_name, class_name = model_path.rsplit(".", 1)
    module = importlib.import_module(module_name)
    cls = getattr(module, class_name)
    if not (isinstance(cls, type) and issubclass(cls, BaseModel)):
        raise TypeError(f"{model_path} is not a Pydantic BaseModel subclass")
    return cls
