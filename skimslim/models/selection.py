from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from skimslim import expr
from skimslim.errors import SourceUnreadable, SyntaxOrBindingError
from skimslim.models.columns import Schema

_log = logging.getLogger("skimslim.selection")

TRUE = ("lit", True)


@dataclass(frozen=True)
class Clause:
    text: str
    origin: str = "selection"


@dataclass(frozen=True)
class CompositeSelection:
    """Ordered AND-combination of clauses. Empty means 'accept everything'."""

    clauses: Tuple[Clause, ...] = ()

    def append(self, clause: Clause) -> "CompositeSelection":
        return CompositeSelection(self.clauses + (clause,))

    def __len__(self) -> int:
        return len(self.clauses)

    def __iter__(self) -> Iterator[Clause]:
        return iter(self.clauses)

    @property
    def text(self) -> str:
        if not self.clauses:
            return "true"
        if len(self.clauses) == 1:
            return self.clauses[0].text
        return " and ".join(f"({c.text})" for c in self.clauses)


def iter_selection_lines(path: str) -> Iterator[str]:
    """Yield the raw lines of a selection file, without line terminators."""
    try:
        fh = open(path, "r", encoding="utf-8")
    except OSError as e:
        raise SourceUnreadable(
            "E_SELECTION_FILE",
            f"Could not load selection from path: '{path}'.",
            hint=f"{type(e).__name__}: {e}",
        ) from e
    with fh:
        try:
            for line in fh:
                yield line.rstrip("\r\n")
        except (OSError, UnicodeDecodeError) as e:
            raise SourceUnreadable(
                "E_SELECTION_FILE",
                f"Could not read selection file: '{path}'.",
                hint=f"{type(e).__name__}: {e}",
            ) from e


def load_selection(selections: Iterable[str] = (), selection_files: Iterable[str] = ()) -> CompositeSelection:
    """Collect clauses: literal selections first, then each file line by line.

    Blank lines and lines starting with '#' are not clauses.
    """
    composite = CompositeSelection()
    for k, text in enumerate(selections, start=1):
        text = text.strip()
        if not text:
            continue
        _log.info("Applying selection: %s", text)
        composite = composite.append(Clause(text, f"selection #{k}"))

    for path in selection_files:
        _log.info("Applying selection from file: %s", path)
        for lineno, line in enumerate(iter_selection_lines(path), start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            _log.info("\t%s", line)
            composite = composite.append(Clause(line, f"{path}:{lineno}"))

    return composite


# ---------------- binding + type checking ----------------

def _suggest(name: str, columns: List[str]) -> str:
    matches = difflib.get_close_matches(name, columns, n=3, cutoff=0.6)
    if matches:
        return f"Did you mean {matches[0]!r}?"
    return "Available columns: " + ", ".join(columns)


def _lit_kind(v: Any) -> str:
    if v is None:
        return "null"
    if isinstance(v, bool):
        return "boolean"
    if isinstance(v, (int, float)):
        return "number"
    return "string"


def _bind(node: Any, schema: Schema, clause: Clause) -> Tuple[Any, str]:
    """Resolve columns against the schema and infer the node kind.

    Returns the bound node and its kind: number, string, boolean, null or any.
    Array columns are bound with an explicit element index (0 when omitted).
    """
    tag = node[0]

    def _fail(code: str, message: str, hint: Optional[str] = None):
        raise SyntaxOrBindingError(code, f"{clause.origin}: {message}", hint=hint or clause.text)

    if tag == "lit":
        return node, _lit_kind(node[1])

    if tag == "col":
        _, name, pos, index = node
        column = schema.get(name)
        if column is None:
            _fail("E_SELECTION_UNKNOWN_COL", f"Unknown column {name!r} in selection.", _suggest(name, schema.names))
        if index is not None and not column.array:
            _fail("E_SELECTION_TYPE", f"Column {name!r} is not an array column and cannot be indexed.")
        if column.array:
            return ("col", name, pos, index or 0), column.kind
        return ("col", name, pos, None), column.kind

    if tag == "neg":
        inner, kind = _bind(node[1], schema, clause)
        if kind not in ("number", "any"):
            _fail("E_SELECTION_TYPE", f"Unary '-' needs a number, got {kind}.")
        return ("neg", inner), "number"

    if tag == "bin":
        _, op, left, right = node
        lnode, lk = _bind(left, schema, clause)
        rnode, rk = _bind(right, schema, clause)
        if lk not in ("number", "any") or rk not in ("number", "any"):
            _fail("E_SELECTION_TYPE", f"Arithmetic '{op}' needs numbers, got {lk} {op} {rk}.")
        return ("bin", op, lnode, rnode), "number"

    if tag == "cmp":
        _, op, left, right = node
        lnode, lk = _bind(left, schema, clause)
        rnode, rk = _bind(right, schema, clause)
        if op in ("==", "!="):
            ok = lk == rk or "any" in (lk, rk) or "null" in (lk, rk)
        else:
            ok = (lk in ("number", "any") and rk in ("number", "any")) or \
                 (lk in ("string", "any") and rk in ("string", "any"))
        if not ok:
            _fail(
                "E_SELECTION_TYPE",
                f"Type mismatch in comparison: {lk} {op} {rk}.",
                f"{clause.text}\nCompare numbers with numbers and strings with quoted strings.",
            )
        return ("cmp", op, lnode, rnode), "boolean"

    if tag in ("and", "or"):
        lnode, lk = _bind(node[1], schema, clause)
        rnode, rk = _bind(node[2], schema, clause)
        for k in (lk, rk):
            if k not in ("boolean", "any"):
                _fail("E_SELECTION_TYPE", f"'{tag}' needs boolean operands, got {k}.",
                      f"{clause.text}\nUse an explicit comparison, e.g. 'n > 0'.")
        return (tag, lnode, rnode), "boolean"

    if tag == "not":
        inner, kind = _bind(node[1], schema, clause)
        if kind not in ("boolean", "any"):
            _fail("E_SELECTION_TYPE", f"'not' needs a boolean operand, got {kind}.")
        return ("not", inner), "boolean"

    _fail("E_SELECTION_PARSE", "Unsupported construct in selection expression.")


def _compile_clause(clause: Clause, schema: Schema) -> Any:
    try:
        ast = expr.parse(clause.text)
    except SyntaxOrBindingError as e:
        raise SyntaxOrBindingError(e.code, f"{clause.origin}: {e.message}", hint=e.hint) from e
    bound, kind = _bind(ast, schema, clause)
    if kind not in ("boolean", "any"):
        raise SyntaxOrBindingError(
            "E_SELECTION_TYPE",
            f"{clause.origin}: selection must produce true/false, got {kind}.",
            hint=f"{clause.text}\nUse a comparison, e.g. 'n > 0'.",
        )
    return bound


# ---------------- evaluation ----------------

def _looks_number(v: Any) -> bool:
    if v is None or isinstance(v, bool):
        return False
    if isinstance(v, (int, float)):
        return True
    if isinstance(v, str):
        s = v.strip()
        if s == "":
            return False
        try:
            float(s)
            return True
        except ValueError:
            return False
    return False


def _to_float(v: Any) -> float:
    if isinstance(v, (int, float)):
        return float(v)
    return float(v.strip())


def _coerce_pair(a: Any, b: Any) -> Tuple[Any, Any]:
    # two strings compare as text; numbers and numeric-looking text as floats
    if isinstance(a, str) and isinstance(b, str):
        return a, b
    if _looks_number(a) and _looks_number(b):
        return _to_float(a), _to_float(b)
    return a, b


def _eval(node: Any, values: Mapping[str, Any]) -> Any:
    tag = node[0]
    if tag == "lit":
        return node[1]
    if tag == "col":
        _, name, _, index = node
        v = values.get(name)
        if index is None:
            return v
        if not v or index >= len(v):
            return None
        return v[index]
    if tag == "and":
        return bool(_eval(node[1], values)) and bool(_eval(node[2], values))
    if tag == "or":
        return bool(_eval(node[1], values)) or bool(_eval(node[2], values))
    if tag == "not":
        return not bool(_eval(node[1], values))
    if tag == "neg":
        v = _eval(node[1], values)
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return -v
        return -_to_float(v) if _looks_number(v) else None
    if tag == "bin":
        _, op, left, right = node
        a = _eval(left, values)
        b = _eval(right, values)
        if not (_looks_number(a) and _looks_number(b)):
            return None
        if not isinstance(a, (int, float)) or not isinstance(b, (int, float)):
            a, b = _to_float(a), _to_float(b)
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if b == 0:
            return None
        return a / b

    # cmp
    _, opx, left, right = node
    a, b = _coerce_pair(_eval(left, values), _eval(right, values))

    if opx in {"==", "!="}:
        return (a == b) if opx == "==" else (a != b)
    if a is None or b is None:
        return False

    if not (isinstance(a, float) and isinstance(b, float)) and not (isinstance(a, str) and isinstance(b, str)):
        # only reachable through untyped ('any') columns
        return False
    if opx == ">":
        return a > b
    if opx == ">=":
        return a >= b
    if opx == "<":
        return a < b
    return a <= b


@dataclass(frozen=True)
class CompiledPredicate:
    """A selection bound to one schema.

    `columns` lists the only columns evaluation reads, in schema order.
    """

    selection: CompositeSelection
    schema: Schema
    ast: Any = TRUE
    columns: Tuple[str, ...] = field(default=())

    @property
    def text(self) -> str:
        return self.selection.text

    def evaluate(self, values: Mapping[str, Any]) -> bool:
        return bool(_eval(self.ast, values))

    __call__ = evaluate

    def rebind(self, schema: Schema) -> "CompiledPredicate":
        """Compile the same selection against another schema."""
        if schema.fingerprint == self.schema.fingerprint:
            return self
        return compile_selection(self.selection, schema)


def compile_selection(selection: CompositeSelection, schema: Schema) -> CompiledPredicate:
    """Parse, bind and type-check every clause, then AND them together."""
    ast: Any = None
    for clause in selection:
        bound = _compile_clause(clause, schema)
        ast = bound if ast is None else ("and", ast, bound)
    if ast is None:
        ast = TRUE

    used = expr.referenced_columns(ast)
    columns = tuple(n for n in schema.names if n in used)
    _log.debug("Selection %r reads columns %s", selection.text, columns)
    return CompiledPredicate(selection, schema, ast, columns)


def compile_fragments(
        selections: Sequence[str],
        selection_files: Sequence[str],
        schema: Schema,
) -> CompiledPredicate:
    return compile_selection(load_selection(selections, selection_files), schema)
