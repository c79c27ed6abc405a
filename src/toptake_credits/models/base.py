from __future__ import annotations

import types
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union, get_args, get_origin

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base model for everything the ledger persists.

    Besides serializing itself, each model describes its own storage layout:
    the unique keys the idempotency protocol depends on, the lookup indexes
    the read paths need, and the numeric bounds the store must enforce. The
    schema generator renders that description as SQL DDL or a Mongo
    validator, and the Mongo backend builds its indexes from it.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    # Field tuples that must be unique across the collection. A tuple made of
    # optional fields only constrains documents where they are set.
    unique_keys: ClassVar[Tuple[Tuple[str, ...], ...]] = ()

    # Non-unique lookup indexes; a leading "-" sorts that field descending
    indexes: ClassVar[Tuple[Tuple[str, ...], ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value so documents stay readable from any client.
        """
        data = self.model_dump(by_alias=True, exclude_none=True, mode="python")
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
            nullable = _is_optional(field.annotation)
            default = None if field.is_required() else field.get_default(call_default_factory=False)
            if isinstance(default, Enum):
                default = default.value

            prop: Dict[str, Any] = {
                "type": cls._map_type(field.annotation),
                "nullable": nullable,
                "default": default,
                "description": field.description,
            }
            prop.update(_numeric_bounds(field.metadata))
            inner = _unwrap_optional(field.annotation)
            if isinstance(inner, type) and issubclass(inner, Enum):
                prop["enum"] = [member.value for member in inner]
            properties[name] = prop

            if not nullable:
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "unique": [list(keys) for keys in cls.unique_keys],
            "indexes": [list(keys) for keys in cls.indexes],
            "properties": properties,
            "required": required,
        }

    @classmethod
    def index_specs(cls) -> List[Dict[str, Any]]:
        """
        Index plan for document stores, one dict per index:
        `name`, `keys` as (field, 1 | -1) pairs, `unique`, and `partial`
        listing the fields a unique index should only cover when present.
        """
        optional = {name for name, f in cls.model_fields.items() if _is_optional(f.annotation)}
        specs: List[Dict[str, Any]] = []
        for keys, unique in [(k, True) for k in cls.unique_keys] + [(k, False) for k in cls.indexes]:
            pairs = [(k.lstrip("-"), -1 if k.startswith("-") else 1) for k in keys]
            fields = [f for f, _ in pairs]
            specs.append(
                {
                    "name": "_".join(["ux" if unique else "ix", *fields]),
                    "keys": pairs,
                    "unique": unique,
                    "partial": [f for f in fields if f in optional] if unique else [],
                }
            )
        return specs

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        annotation = _unwrap_optional(annotation)
        origin: Any = get_origin(annotation)
        if origin in (list, tuple, set):
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string"
        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"

        name = getattr(annotation, "__name__", "object")
        return name.lower()


def _numeric_bounds(metadata: List[Any]) -> Dict[str, Any]:
    # pydantic keeps Field(ge=..., gt=...) as annotated_types markers
    bounds: Dict[str, Any] = {}
    for marker in metadata:
        if getattr(marker, "ge", None) is not None:
            bounds["minimum"] = marker.ge
        if getattr(marker, "gt", None) is not None:
            bounds["exclusive_minimum"] = marker.gt
    return bounds


def _is_optional(annotation: Any) -> bool:
    origin = get_origin(annotation)
    return origin in (Union, types.UnionType) and type(None) in get_args(annotation)


def _unwrap_optional(annotation: Any) -> Any:
    if _is_optional(annotation):
        args = [a for a in get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


class PaginatedResult(BaseModel):
    items: list[Any] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
