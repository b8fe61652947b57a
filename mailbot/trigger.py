"""Tagged trigger outcomes and evaluation of user predicates."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final


@dataclass(frozen=True)
class Matched:
    """The trigger fired; *payload* is passed to the mail handler."""

    payload: Any = True


@dataclass(frozen=True)
class NotMatched:
    """The trigger did not fire."""


NOT_MATCHED: Final = NotMatched()

TriggerResult = Matched | NotMatched


def to_trigger_result(value: Any) -> TriggerResult:
    """Map a predicate return value onto a :data:`TriggerResult`.

    Explicit results pass through unchanged.  Any other value follows the
    truthiness rule: truthy becomes ``Matched(value)``, falsy NotMatched.
    A predicate that needs a falsy payload dispatched returns
    ``Matched(payload)`` itself.
    """
    if isinstance(value, (Matched, NotMatched)):
        return value
    return Matched(value) if value else NOT_MATCHED


async def evaluate_trigger(trigger: Callable[[Any], Any], mail: Any) -> TriggerResult:
    """Call *trigger* (sync or async) and return its tagged result."""
    result = trigger(mail)
    if inspect.isawaitable(result):
        result = await result
    return to_trigger_result(result)
