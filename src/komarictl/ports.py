"""Listen port validation helpers."""
from __future__ import annotations

from .errors import InputError

MIN_PORT = 1
MAX_PORT = 65535


def parse_port(raw: str | int | None, *, default: int) -> int:
    """Return a valid TCP port from operator input.

    Blank input selects *default*. Anything that is not an integer in
    ``1..65535`` raises :class:`InputError`.
    """
    if raw is None:
        return default
    if isinstance(raw, bool):
        raise InputError(f"Invalid port {raw!r}; enter a number between 1 and 65535.")
    if isinstance(raw, int):
        value = raw
    else:
        text = raw.strip()
        if not text:
            return default
        if not text.isdigit():
            raise InputError(f"Invalid port {text!r}; enter a number between 1 and 65535.")
        value = int(text)
    if not MIN_PORT <= value <= MAX_PORT:
        raise InputError(f"Invalid port {value}; enter a number between 1 and 65535.")
    return value


__all__ = ["MAX_PORT", "MIN_PORT", "parse_port"]
