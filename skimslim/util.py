from __future__ import annotations

import glob
import os
from pathlib import Path
from typing import Optional, Dict, Any, List

from skimslim.errors import SkimSlimError

SHARD_SUFFIXES = {
    ".csv": "csv",
    ".db": "sqlite",
    ".sqlite": "sqlite",
    ".sqlite3": "sqlite",
}


def _is_glob(s: str) -> bool:
    return any(ch in s for ch in "*?[")


def _norm_path(p: str, *, base_dir: Optional[Path]) -> str:
    """Normalize a path relative to a base directory (when provided).

    - Leaves absolute paths unchanged.
    - If base_dir is provided and p is relative, returns an absolute resolved path.
    - Glob patterns are joined but not resolved, so the pattern survives.
    """
    if not isinstance(p, str) or not p:
        return p
    pp = Path(p)
    if pp.is_absolute():
        return str(pp)
    if base_dir is None:
        return p
    if _is_glob(p):
        return str(base_dir / pp)
    return str((base_dir / pp).resolve())


def _infer_type_from_uri(uri: str) -> Optional[str]:
    return SHARD_SUFFIXES.get(Path(uri).suffix.lower())


def _expand_shards(uri: str, *, type: Optional[str] = None) -> List[str]:
    """Resolve an input location to its ordered list of shard files.

    A file is a single shard. A directory contributes every supported file
    below it, sorted by path. A glob pattern contributes its sorted matches.
    """
    if _is_glob(uri):
        matches = [m for m in sorted(glob.glob(uri, recursive=True)) if os.path.isfile(m)]
    elif os.path.isdir(uri):
        matches = []
        for root, dirs, files in os.walk(uri):
            dirs.sort()
            for name in sorted(files):
                matches.append(os.path.join(root, name))
        matches.sort()
    elif os.path.isfile(uri):
        return [uri]
    else:
        matches = []

    if type is not None:
        return [m for m in matches if _infer_type_from_uri(m) == type]
    return [m for m in matches if _infer_type_from_uri(m) is not None]


def _fsync_path(path: str, *, directory: bool = False) -> None:
    """Flush a file (or a directory entry table) to stable storage."""
    if directory:
        if os.name != "posix":
            return
        fd = os.open(path, os.O_RDONLY)
    else:
        fd = os.open(path, os.O_RDWR)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


FrictionlessSchema = Dict[str, Any]


def _normalize_inline_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Expect frictionless-ish schema:
      {"fields":[{"name":"pt","type":"number"}, ...]}
    Array fields carry their element type under "arrayItem".
    """
    if not isinstance(schema, dict):
        raise SkimSlimError(
            "E_SCHEMA_INLINE_TYPE",
            "Inline schema must be a mapping (dict).",
            hint="Example: {'fields': [{'name': 'pt', 'type': 'number'}]}",
        )
    if "fields" not in schema:
        return {"fields": []}
    if not isinstance(schema["fields"], list):
        raise SkimSlimError(
            "E_SCHEMA_INLINE_FIELDS",
            "Inline schema['fields'] must be a list.",
            hint="Example: {'fields': [{'name': 'pt', 'type': 'number'}]}",
        )
    for i, f in enumerate(schema["fields"]):
        if not isinstance(f, dict) or not isinstance(f.get("name"), str) or not f.get("name"):
            raise SkimSlimError(
                "E_SCHEMA_INLINE_FIELDS",
                f"Inline schema field #{i} must be a mapping with a non-empty 'name'.",
                hint=str(f),
            )
    return schema
