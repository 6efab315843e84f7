"""
Typed tool parameters.

Tools declare their parameters as a mapping of name to ``Param``.  The same
declaration renders the JSON schema sent to the model and drives argument
validation, so the two cannot drift apart.

Type tags: ``boolean``, ``number``, ``string``, ``pattern`` (a regular
expression), ``null``, ``path`` (an existing path inside the workspace),
``new_path`` (inside the workspace, need not exist yet), ``integer`` (with
optional bounds) and ``array`` (with item type and optional length bounds).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

BOOLEAN = "boolean"
NUMBER = "number"
STRING = "string"
PATTERN = "pattern"
NULL = "null"
PATH = "path"
NEW_PATH = "new_path"
INTEGER = "integer"
ARRAY = "array"

PARAM_KINDS = frozenset(
    {BOOLEAN, NUMBER, STRING, PATTERN, NULL, PATH, NEW_PATH, INTEGER, ARRAY}
)


@dataclass(frozen=True)
class Param:
    kind: str
    description: str | None = None
    required: bool = True
    minimum: int | None = None
    maximum: int | None = None
    items: Param | None = None
    min_items: int | None = None
    max_items: int | None = None

    def __post_init__(self) -> None:
        if self.kind not in PARAM_KINDS:
            raise ValueError(f"Unknown parameter type: {self.kind!r}")
        if self.kind == ARRAY and self.items is None:
            raise ValueError("Array parameters need an item type")

    def to_json_schema(self) -> dict:
        schema: dict
        if self.kind == PATTERN:
            schema = {"type": "string", "format": "regex"}
        elif self.kind in (PATH, NEW_PATH):
            schema = {"type": "string", "format": "path"}
        elif self.kind == INTEGER:
            schema = {"type": "integer"}
            if self.minimum is not None:
                schema["minimum"] = self.minimum
            if self.maximum is not None:
                schema["maximum"] = self.maximum
        elif self.kind == ARRAY:
            assert self.items is not None
            schema = {"type": "array", "items": self.items.to_json_schema()}
            if self.min_items is not None:
                schema["minItems"] = self.min_items
            if self.max_items is not None:
                schema["maxItems"] = self.max_items
        else:
            schema = {"type": self.kind}
        if self.description:
            schema["description"] = self.description
        return schema


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def boolean(description: str | None = None, *, required: bool = True) -> Param:
    return Param(BOOLEAN, description, required)


def number(description: str | None = None, *, required: bool = True) -> Param:
    return Param(NUMBER, description, required)


def string(description: str | None = None, *, required: bool = True) -> Param:
    return Param(STRING, description, required)


def pattern(description: str | None = None, *, required: bool = True) -> Param:
    return Param(PATTERN, description, required)


def null(description: str | None = None, *, required: bool = True) -> Param:
    return Param(NULL, description, required)


def path(description: str | None = None, *, required: bool = True) -> Param:
    return Param(PATH, description, required)


def new_path(description: str | None = None, *, required: bool = True) -> Param:
    return Param(NEW_PATH, description, required)


def integer(
    description: str | None = None,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    required: bool = True,
) -> Param:
    return Param(INTEGER, description, required, minimum=minimum, maximum=maximum)


def array(
    items: Param,
    description: str | None = None,
    *,
    min_items: int | None = None,
    max_items: int | None = None,
    required: bool = True,
) -> Param:
    return Param(
        ARRAY,
        description,
        required,
        items=items,
        min_items=min_items,
        max_items=max_items,
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def parameters_schema(params: dict[str, Param]) -> dict:
    """Render a parameter map as a JSON-schema object."""
    return {
        "type": "object",
        "properties": {name: p.to_json_schema() for name, p in params.items()},
        "required": [name for name, p in params.items() if p.required],
        "additionalProperties": False,
    }


def resolve_workspace_path(root: Path, value: str) -> Path:
    """Resolve *value* against the workspace *root* (relative paths join the root)."""
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    return candidate.resolve()


def is_within(root: Path, candidate: Path) -> bool:
    try:
        candidate.relative_to(root.resolve())
    except ValueError:
        return False
    return True
