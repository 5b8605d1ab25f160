"""Stored record -> pydantic model.

SQLite rows and Redis hashes both pass through `row_to_model`. Redis has no
NULL, so optional fields are written as "" and read back through
``empty_as_none``.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel


def _as_dict(record: Any) -> dict[str, Any]:
    if isinstance(record, Mapping):
        return dict(record)
    # aiosqlite.Row is not a Mapping but exposes keys()
    if record is not None and hasattr(record, "keys"):
        return {key: record[key] for key in record.keys()}
    raise TypeError(f"Cannot map record of type {type(record).__name__}")


def _decode_json(key: str, raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if not isinstance(raw, str) or raw == "":
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Column {key!r} does not hold valid JSON: {e}") from e


def row_to_model[ModelT: BaseModel](
    model_cls: type[ModelT],
    row: Any,
    *,
    json_fields: Iterable[str] = (),
    empty_as_none: Iterable[str] = (),
) -> ModelT:
    """Validate ``row`` into ``model_cls`` after decoding JSON columns."""
    data = _as_dict(row)
    for key in empty_as_none:
        if data.get(key) == "":
            data[key] = None
    for key in json_fields:
        if key in data and data[key] is not None:
            data[key] = _decode_json(key, data[key])
    return model_cls.model_validate(data)
