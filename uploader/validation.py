"""Pre-transfer acceptance checks.

The gate is pure: it inspects only the logical name and declared size and
returns a verdict. Callers decide whether and how to log it.
"""

from dataclasses import dataclass
from typing import Protocol

DEFAULT_DENYLIST = ("virus", ".exe")


@dataclass(frozen=True)
class ValidationVerdict:
    accepted: bool
    reason: str | None = None

    @classmethod
    def accept(cls) -> "ValidationVerdict":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> "ValidationVerdict":
        return cls(accepted=False, reason=reason)


class Scanner(Protocol):
    def scan(self, logical_name: str, size: int | None) -> ValidationVerdict: ...


class DenylistScanner:
    """Filename and size policy used when no content scanner is configured.

    Patterns beginning with "." are matched as file extensions, anything else
    as a substring. Matching is case-insensitive.
    """

    def __init__(self, patterns: tuple[str, ...] | list[str] = DEFAULT_DENYLIST) -> None:
        self.patterns = tuple(p.lower() for p in patterns if p)

    def scan(self, logical_name: str, size: int | None) -> ValidationVerdict:
        if not isinstance(logical_name, str) or not logical_name.strip():
            return ValidationVerdict.reject("logical name is empty")
        try:
            logical_name.encode("utf-8")
        except UnicodeEncodeError:
            return ValidationVerdict.reject("logical name is not valid text")

        lowered = logical_name.lower()
        for pattern in self.patterns:
            matched = lowered.endswith(pattern) if pattern.startswith(".") else pattern in lowered
            if matched:
                return ValidationVerdict.reject(f"logical name {logical_name!r} matches denylist pattern {pattern!r}")

        if size is not None and size < 0:
            return ValidationVerdict.reject("declared size must not be negative")
        if size == 0:
            return ValidationVerdict.reject("empty objects are not allowed")
        return ValidationVerdict.accept()


class ValidationGate:
    def __init__(self, scanner: Scanner | None = None, denylist: tuple[str, ...] = DEFAULT_DENYLIST) -> None:
        self.scanner = scanner or DenylistScanner(denylist)

    def validate(self, request) -> ValidationVerdict:
        return self.scanner.scan(request.logical_name, request.declared_size)
