"""JSON-schema validation for tool input schemas.

Arguments are checked with :class:`jsonschema.Draft7Validator`.  Error
paths are rooted at ``$`` (``$.field``, ``$[0]``).  A schema that is not
itself valid Draft 7 is logged and treated as accepting anything, since
upstream servers publish their own schemas.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

logger = logging.getLogger(__name__)


def validate_schema(data: Any, schema: dict[str, Any] | None) -> tuple[bool, list[str]]:
    """Validate ``data`` against ``schema``.

    Returns ``(valid, errors)``; ``errors`` lists every violation found,
    ordered by path.  An empty or missing schema accepts anything.
    """
    if not schema:
        return True, []
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as exc:
        logger.warning("Ignoring invalid tool input schema: %s", exc.message)
        return True, []

    errors = [
        f"{format_path(error.absolute_path)}: {error.message}"
        for error in Draft7Validator(schema).iter_errors(data)
    ]
    errors.sort(key=lambda e: e.split(": ", 1)[0])
    return not errors, errors


def format_path(path: Iterable[Any]) -> str:
    """Render a jsonschema error path as ``$.key[0]``."""
    rendered = "$"
    for part in path:
        rendered += f"[{part}]" if isinstance(part, int) else f".{part}"
    return rendered
