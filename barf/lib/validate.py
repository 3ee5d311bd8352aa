"""
JSON Schema checks at barf's data boundaries.

Schemas ship as barf/schemas/<name>.schema.json and cover issue records,
lock records, .barfrc values, triage answers and checks.yaml.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema

from barf.errors import BarfError

SCHEMAS_DIR = Path(__file__).resolve().parent.parent / "schemas"


class ValidationError(BarfError):
    """Data did not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str | None = None):
        self.schema_name = schema_name
        self.path = path
        where = f" at {path}" if path else ""
        super().__init__(f"[{schema_name}] {message}{where}")


@lru_cache(maxsize=None)
def _validator(schema_name: str):
    schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
    try:
        schema = json.loads(schema_path.read_text())
    except FileNotFoundError:
        raise ValidationError(schema_name, f"Schema file not found: {schema_path}") from None
    return jsonschema.validators.validator_for(schema)(schema)


def validate(data: Any, schema_name: str) -> None:
    """
    Check data against a named schema.

    Raises:
        ValidationError: carrying the most relevant mismatch and its path
    """
    error = jsonschema.exceptions.best_match(_validator(schema_name).iter_errors(data))
    if error is None:
        return
    path = ".".join(str(p) for p in error.absolute_path) or "(root)"
    raise ValidationError(schema_name, error.message, path)
