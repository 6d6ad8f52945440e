"""JSON Schema validation infrastructure.

Schemas ship inside the package under ``flowguard/schemas``. They cross
reference each other by ``$id`` (request and policy schemas pull shared
definitions from ``common.schema.json``), so validators are built over a
registry containing every bundled schema.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
SCHEMA_BASE_URI = "https://schemas.flowguard.dev/"


def load_schema(name: str) -> Dict[str, Any]:
    path = SCHEMAS_DIR / name
    with open(path, encoding="utf-8") as f:
        return json.load(f)


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Build a registry over all bundled schemas for $ref resolution."""
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = load_schema(schema_path.name)
        schema_id = schema.get("$id") or f"{SCHEMA_BASE_URI}{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=None)
def schema_validator(ref: str) -> Draft202012Validator:
    """
    Create a validator for a schema or a fragment of one.

    ``ref`` is a bundled file name optionally followed by a JSON pointer,
    e.g. ``"requests.schema.json#/$defs/approve"``.
    """
    return Draft202012Validator({"$ref": f"{SCHEMA_BASE_URI}{ref}"}, registry=_schema_registry())


def validate_against_schema(obj: Any, ref: str) -> List[str]:
    """Validate an object, returning error messages (empty if valid)."""
    validator = schema_validator(ref)
    return [
        f"{error.json_path}: {error.message}"
        for error in sorted(validator.iter_errors(obj), key=lambda e: e.json_path)
    ]
