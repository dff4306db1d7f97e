"""
accounts/results.py -- Tagged result type returned by every account flow.

    Ok(payload, messages)                        the transition happened
    Fail(kind, code, message, field_errors)      it did not, and nothing changed

kind is coarse and decides the HTTP status family; code is the stable
machine-readable reason a client can switch on; message is human text.
field_errors maps a request field name to its messages, for failures a user
fixes by editing one input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class FailKind(str, Enum):
    INVALID = "invalid"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


@dataclass
class Ok:
    payload: Any = None
    messages: list[str] = field(default_factory=list)

    ok = True


@dataclass
class Fail:
    kind: FailKind
    code: str
    message: str
    field_errors: dict[str, list[str]] = field(default_factory=dict)

    ok = False


Result = Union[Ok, Fail]


def field_fail(kind: FailKind, code: str, field_name: str, message: str) -> Fail:
    """A failure attributed to one request field."""
    return Fail(kind=kind, code=code, message=message, field_errors={field_name: [message]})


def form_fail(kind: FailKind, code: str, message: str) -> Fail:
    """A failure not attributable to a single field."""
    return Fail(kind=kind, code=code, message=message)
