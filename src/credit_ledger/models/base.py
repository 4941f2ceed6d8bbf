from __future__ import annotations

import types
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union, get_args, get_origin

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a timestamp to an aware UTC datetime.

    Document stores hand back naive datetimes that are implicitly UTC; the
    consumption ordering compares timestamps from several sources, so every
    model field and every `now` argument goes through here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for everything the ledger persists.

    - `serialize_for_db` is the single place that controls the stored shape
    - `db_schema` describes the model in backend-agnostic terms so the schema
      generator can render SQL DDL or document validators offline
    """

    # Logical collection / table name; subclasses must override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    # Secondary indexes as tuples of field names, rendered by the generator
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        data = self.model_dump(mode="python", exclude_none=True)
        # Enum members are stored by value; datetimes stay native
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in data.items()
        }

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            field_type, nullable = cls._map_type(field.annotation)
            properties[name] = {
                "type": field_type,
                "nullable": nullable,
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [list(index) for index in cls.indexes],
        }

    @staticmethod
    def _map_type(annotation: Any) -> Tuple[str, bool]:
        """
        Map a field annotation to a (logical type, nullable) pair.
        """
        nullable = False
        origin = get_origin(annotation)
        if origin is Union or origin is types.UnionType:
            args = [arg for arg in get_args(annotation) if arg is not type(None)]
            nullable = len(args) != len(get_args(annotation))
            annotation = args[0] if len(args) == 1 else Any
            origin = get_origin(annotation)

        if origin in (list, tuple, set):
            return "array", nullable
        if origin is dict or annotation is dict:
            return "json", nullable
        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string", nullable
        if annotation is bool:
            return "boolean", nullable
        if annotation is int:
            return "integer", nullable
        if annotation is float:
            return "number", nullable
        if annotation is str:
            return "string", nullable
        if annotation is datetime:
            return "datetime", nullable
        return "json", nullable
