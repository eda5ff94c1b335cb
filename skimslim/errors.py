from __future__ import annotations

from typing import Optional


class SkimSlimError(Exception):
    """An instructional error intended for end users.

    Raised for mistakes in the run description (bad selection, unknown input,
    output collisions, etc.) and for I/O failures that end a run.
    It carries a short error code and an optional hint to guide the user.
    """

    def __init__(self, code: str, message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.hint:
            return base + f"\nHint: {self.hint}"
        return base


class CompileError(SkimSlimError):
    """The selection could not be turned into a predicate."""


class SourceUnreadable(CompileError):
    """A selection file could not be opened for reading."""


class SyntaxOrBindingError(CompileError):
    """A selection clause failed to parse, bind or type-check."""


class DestinationExists(SkimSlimError):
    """The output already exists and replacing it was not requested."""


class SinkOpenError(SkimSlimError):
    pass


class SinkCommitError(SkimSlimError):
    pass
