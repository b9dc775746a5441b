"""Discriminated operation results.

Public pipeline operations are wrapped with :func:`operation`: the wrapped
function does its work inside the caller's session and raises a
:class:`~grantflow.errors.WorkflowError` for any expected business condition.
The wrapper commits on success, rolls back on failure and hands back an
:class:`Outcome` either way. Anything that is not a ``WorkflowError`` (the store
being unavailable, a programming error) is rolled back and re-raised.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

from sqlalchemy.orm import Session

from grantflow.errors import WorkflowError

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T | None = None
    error: WorkflowError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def operation(func: Callable[..., T]) -> Callable[..., Outcome[T]]:
    @functools.wraps(func)
    def wrapper(session: Session, *args: Any, **kwargs: Any) -> Outcome[T]:
        try:
            value = func(session, *args, **kwargs)
            session.commit()
        except WorkflowError as exc:
            session.rollback()
            log.info("%s rejected: %s", func.__name__, exc.message)
            return Outcome(error=exc)
        except Exception:
            session.rollback()
            raise
        return Outcome(value=value)

    return wrapper
