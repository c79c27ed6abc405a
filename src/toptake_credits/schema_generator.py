from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.base import DBSerializableModel
from .models.credits import CreditBalance, CreditHistoryEntry
from .models.ledger import LedgerEntry
from .models.purchase import CreditPurchase


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    CreditBalance,
    CreditHistoryEntry,
    CreditPurchase,
    LedgerEntry,
]

_BSON_TYPES = {
    "string": "string",
    "integer": ["int", "long"],
    "number": ["double", "decimal", "int", "long"],
    "boolean": "bool",
    "datetime": "date",
    "object": "object",
    "array": "array",
}


def generate_logical_schema() -> Dict[str, Any]:
    """
    Logical schema of every ledger table, keyed by collection name. Both
    renderers below work from this.
    """
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Render CREATE TABLE / CREATE INDEX statements.

    Numeric bounds become CHECK constraints, so a relational store rejects a
    negative balance on its own. Unique keys over optional columns are
    emitted as partial unique indexes on postgres.
    """
    statements: List[str] = []
    for table_name, spec in schema.items():
        props = spec["properties"]
        pk = spec.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            required = field_name in spec.get("required", []) or field_name == pk
            nullable = "NOT NULL" if required else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.extend(_check_constraints(props))
        columns.append(f'    PRIMARY KEY ("{pk}")')

        trailing: List[str] = []
        for keys in spec.get("unique", []):
            optional = [k for k in keys if props[k]["nullable"]]
            if optional and dialect == "postgres":
                where = " AND ".join(f'"{k}" IS NOT NULL' for k in optional)
                trailing.append(
                    f'CREATE UNIQUE INDEX IF NOT EXISTS "ux_{table_name}_{"_".join(keys)}" '
                    f'ON "{table_name}" ({_column_list(keys)}) WHERE {where};'
                )
            else:
                columns.append(f"    UNIQUE ({_column_list(keys)})")
        for keys in spec.get("indexes", []):
            name = "_".join(k.lstrip("-") for k in keys)
            trailing.append(
                f'CREATE INDEX IF NOT EXISTS "ix_{table_name}_{name}" '
                f'ON "{table_name}" ({_column_list(keys)});'
            )

        statements.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);"
        )
        statements.extend(trailing)
    return "\n".join(statements) + "\n"


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """
    Render a MongoDB `$jsonSchema` validator and the index plan for each
    collection, as JSON.
    """
    rendered = {}
    for name, spec in schema.items():
        model_cls = next(m for m in MODEL_REGISTRY if m.collection_name == name)
        rendered[name] = {
            "validator": {"$jsonSchema": _json_schema(spec)},
            "indexes": model_cls.index_specs(),
        }
    return json.dumps(rendered, indent=2, default=str)


def _json_schema(spec: Dict[str, Any]) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    for field_name, meta in spec["properties"].items():
        prop: Dict[str, Any] = {"bsonType": _BSON_TYPES.get(meta["type"], "string")}
        if "enum" in meta:
            prop["enum"] = meta["enum"]
        if "minimum" in meta:
            prop["minimum"] = meta["minimum"]
        if "exclusive_minimum" in meta:
            prop["minimum"] = meta["exclusive_minimum"]
            prop["exclusiveMinimum"] = True
        if meta.get("description"):
            prop["description"] = meta["description"]
        properties[field_name] = prop
    return {"bsonType": "object", "required": spec["required"], "properties": properties}


def _check_constraints(props: Dict[str, Any]) -> List[str]:
    checks: List[str] = []
    for field_name, meta in props.items():
        if "minimum" in meta:
            checks.append(f'    CHECK ("{field_name}" >= {meta["minimum"]})')
        if "exclusive_minimum" in meta:
            checks.append(f'    CHECK ("{field_name}" > {meta["exclusive_minimum"]})')
        if "enum" in meta:
            values = ", ".join(f"'{v}'" for v in meta["enum"])
            checks.append(f'    CHECK ("{field_name}" IN ({values}))')
    return checks


def _column_list(keys: List[str]) -> str:
    return ", ".join(
        f'"{k[1:]}" DESC' if k.startswith("-") else f'"{k}"' for k in keys
    )


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "INTEGER"
    if logical_type == "number":
        return "NUMERIC(12, 2)" if dialect == "postgres" else "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type == "object":
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Print the storage schema of the credit ledger tables."
    )
    parser.add_argument(
        "--backend",
        choices=["sql", "nosql"],
        required=True,
        help="sql: CREATE TABLE/INDEX statements; nosql: Mongo validators and indexes.",
    )
    parser.add_argument(
        "--dialect",
        default="postgres",
        help="SQL dialect hint (e.g. postgres, mysql).",
    )
    args = parser.parse_args()

    schema = generate_logical_schema()
    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
