"""Unique identifier generation for compiled statements."""

from __future__ import annotations


class AliasGenerator:
    """Counter-backed generator of unquoted-safe identifiers.

    One generator belongs to one statement, so aliases never collide inside
    a statement and nothing is shared between concurrent requests.
    """

    def __init__(self, prefix: str = "A") -> None:
        if not prefix[:1].isalpha():
            raise ValueError(f"Alias prefix must start with a letter: {prefix!r}")
        self.prefix = prefix.upper()
        self._count = 0

    def __call__(self) -> str:
        self._count += 1
        return f"{self.prefix}{self._count}"

    @property
    def issued(self) -> int:
        """Number of aliases handed out so far."""
        return self._count
