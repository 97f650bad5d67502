from __future__ import annotations

from typing import Any

EXIT_SUCCESS = 0
EXIT_UNEXPECTED = 1
EXIT_USAGE = 2
EXIT_NOT_INITIALIZED = 3
EXIT_NOT_FOUND = 4
EXIT_AMBIGUOUS_ID = 5
EXIT_INVALID_TRANSITION = 6
EXIT_VALIDATION_FAILED = 7


class TicketError(Exception):
    """Base error carrying a machine-readable code and a CLI exit code."""

    code = "unknown"
    exit_code = EXIT_UNEXPECTED

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if exit_code is not None:
            self.exit_code = exit_code
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class TicketLoadError(TicketError):
    """Structural front matter failure; nothing else is checked for that document."""

    code = "frontmatter_missing"
    exit_code = EXIT_VALIDATION_FAILED


class SchemaError(TicketError):
    code = "validation_failed"
    exit_code = EXIT_VALIDATION_FAILED

    def __init__(self, errors: list[str], file: str | None = None) -> None:
        super().__init__("\n".join(errors), details={"file": file, "errors": list(errors)})
        self.errors = list(errors)
        self.file = file


class InvalidValue(TicketError):
    exit_code = EXIT_USAGE


class MissingField(TicketError):
    code = "missing_field"
    exit_code = EXIT_USAGE


class InvalidTransition(TicketError):
    code = "invalid_transition"
    exit_code = EXIT_INVALID_TRANSITION

    def __init__(
        self,
        message: str,
        current: str | None,
        target: str,
        allowed: list[Any],
        details: dict[str, Any] | None = None,
    ) -> None:
        payload = {"from": current, "to": target, "allowed": list(allowed)}
        payload.update(details or {})
        super().__init__(message, details=payload)
        self.current = current
        self.target = target
        self.allowed = list(allowed)


class PatchError(TicketError):
    code = "invalid_patch"
    exit_code = EXIT_USAGE


class NotFound(TicketError):
    code = "ticket_not_found"
    exit_code = EXIT_NOT_FOUND


class AmbiguousId(TicketError):
    code = "ambiguous_id"
    exit_code = EXIT_AMBIGUOUS_ID

    def __init__(self, query: str, candidates: list[dict[str, Any]]) -> None:
        options = "\n- ".join(f"{c['display_id']} ({c['id']})" for c in candidates)
        super().__init__(
            f"Ambiguous ticket id '{query}'. Use one of:\n- {options}",
            details={"query": query, "matches": candidates},
        )
        self.candidates = candidates


class UsageError(TicketError):
    code = "usage"
    exit_code = EXIT_USAGE


class NotInitialized(TicketError):
    code = "not_initialized"
    exit_code = EXIT_NOT_INITIALIZED


class IndexOutOfSync(TicketError):
    code = "index_out_of_sync"
    exit_code = EXIT_VALIDATION_FAILED
