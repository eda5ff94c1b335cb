from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from skimslim.errors import SkimSlimError
from skimslim.util import FrictionlessSchema, _normalize_inline_schema

_log = logging.getLogger("skimslim.columns")

# frictionless field type -> expression language kind
_KINDS = {
    "integer": "number",
    "number": "number",
    "year": "number",
    "string": "string",
    "boolean": "boolean",
}

TRUE_VALUES = {"true", "True", "TRUE", "1"}
FALSE_VALUES = {"false", "False", "FALSE", "0"}


@dataclass(frozen=True)
class Column:
    name: str
    type: str = "any"
    array: bool = False
    enabled: bool = True
    # typed from a sample or a storage declaration rather than an inline schema
    inferred: bool = field(default=False, compare=False)

    @property
    def kind(self) -> str:
        """Kind of a single value (the element kind for array columns)."""
        return _KINDS.get(self.type, "any")

    def convert(self, raw: Any) -> Any:
        """Convert a stored value to the typed value used during selection.

        Empty cells become None; array columns become lists (empty when absent).
        Raises ValueError when the stored value does not fit a declared column
        type. Inferred columns widen instead: integer to number, then the
        stored text as-is; a malformed array reads as empty.
        """
        try:
            return self._convert(raw)
        except ValueError:
            if not self.inferred:
                raise
            return self._widen(raw)

    def _convert(self, raw: Any) -> Any:
        if self.array:
            if raw is None or (isinstance(raw, str) and raw.strip() == ""):
                return []
            items = json.loads(raw) if isinstance(raw, str) else raw
            if not isinstance(items, list):
                raise ValueError(f"expected a JSON array, got {raw!r}")
            return [self._convert_scalar(v) for v in items]
        return self._convert_scalar(raw)

    def _widen(self, raw: Any) -> Any:
        _log.debug("Value %r does not fit inferred %s column %r; widening", raw, self.type, self.name)
        if self.array:
            return []
        if self.type in ("integer", "year"):
            try:
                return float(raw.strip())
            except ValueError:
                pass
        return raw

    def _convert_scalar(self, raw: Any) -> Any:
        if raw is None:
            return None
        if isinstance(raw, str):
            if raw.strip() == "":
                return None
            if self.type in ("integer", "year"):
                return int(raw.strip())
            if self.type == "number":
                return float(raw.strip())
            if self.type == "boolean":
                s = raw.strip()
                if s in TRUE_VALUES:
                    return True
                if s in FALSE_VALUES:
                    return False
                raise ValueError(f"not a boolean: {raw!r}")
            return raw
        if self.type == "boolean" and isinstance(raw, int):
            return bool(raw)
        return raw


@dataclass(frozen=True)
class Schema:
    """Ordered set of columns, unique by name."""

    columns: Tuple[Column, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))
        seen = set()
        for c in self.columns:
            if c.name in seen:
                raise SkimSlimError(
                    "E_SCHEMA_DUPLICATE",
                    f"Column {c.name!r} appears more than once in the schema.",
                    hint="Column names must be unique within a dataset.",
                )
            seen.add(c.name)

    def __iter__(self) -> Iterator[Column]:
        return iter(self.columns)

    def __len__(self) -> int:
        return len(self.columns)

    def __contains__(self, name: object) -> bool:
        return any(c.name == name for c in self.columns)

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.columns]

    def get(self, name: str) -> Optional[Column]:
        for c in self.columns:
            if c.name == name:
                return c
        return None

    def index(self, name: str) -> int:
        for i, c in enumerate(self.columns):
            if c.name == name:
                return i
        raise KeyError(name)

    def enabled_columns(self) -> List[Column]:
        return [c for c in self.columns if c.enabled]

    @property
    def fingerprint(self) -> Tuple[Tuple[str, str, bool], ...]:
        # enabled flags are a view, not part of the schema identity
        return tuple((c.name, c.type, c.array) for c in self.columns)

    @classmethod
    def from_descriptor(cls, descriptor: FrictionlessSchema) -> "Schema":
        descriptor = _normalize_inline_schema(descriptor)
        cols: List[Column] = []
        for f in descriptor.get("fields", []):
            ftype = f.get("type") or "any"
            if ftype == "array":
                item = f.get("arrayItem") if isinstance(f.get("arrayItem"), dict) else {}
                cols.append(Column(f["name"], item.get("type") or "any", array=True))
            else:
                cols.append(Column(f["name"], ftype))
        return cls(tuple(cols))

    def to_descriptor(self, *, enabled_only: bool = False) -> FrictionlessSchema:
        fields: List[Dict[str, Any]] = []
        for c in self.columns:
            if enabled_only and not c.enabled:
                continue
            if c.array:
                fields.append({"name": c.name, "type": "array", "arrayItem": {"type": c.type}})
            else:
                fields.append({"name": c.name, "type": c.type})
        return {"fields": fields}


def _matches(pattern: str, name: str) -> bool:
    if any(ch in pattern for ch in "*?["):
        return fnmatchcase(name, pattern)
    return pattern == name


def apply_projection(
        schema: Schema,
        disable_all: bool = False,
        disabled: Iterable[str] = (),
        enabled: Iterable[str] = (),
) -> Schema:
    """Return the schema with its output flags set.

    Precedence, later wins: everything on; disable_all; disabled names;
    enabled names. Names may be wildcard patterns. A name that matches no
    column is ignored.
    """
    disabled = list(disabled)
    enabled = list(enabled)

    for pattern in disabled + enabled:
        if not any(_matches(pattern, c.name) for c in schema):
            _log.info("Column pattern %r matches no column; ignored", pattern)

    cols = []
    for c in schema:
        on = not disable_all
        if any(_matches(p, c.name) for p in disabled):
            on = False
        if any(_matches(p, c.name) for p in enabled):
            on = True
        cols.append(replace(c, enabled=on))

    result = Schema(tuple(cols))
    _log.info("Output columns: %s", ", ".join(c.name for c in result.enabled_columns()) or "(none)")
    return result
