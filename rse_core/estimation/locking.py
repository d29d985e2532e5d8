"""
Re-entrancy guard for estimators.

An estimator is locked for the duration of estimate(). Any attribute
declared as a LockedAttribute rejects assignment while locked. This is not
a mutex: callers serialize access to one estimator instance themselves.
"""

from typing import Any, Callable, Optional

from rse_core.errors import LockedError

Validator = Callable[[Any, Any], Any]


class LockedAttribute:
    """
    Data descriptor whose assignment fails with LockedError while the owner
    is locked. An optional validator(owner, value) may normalise the value or
    raise InvalidArgumentError.
    """

    def __init__(self, validator: Optional[Validator] = None):
        self.validator = validator
        self.name = None

    def __set_name__(self, owner, name):
        self.name = '_' + name

    def __get__(self, obj, objtype=None):
        if obj is None:
            return self
        return getattr(obj, self.name)

    def __set__(self, obj, value):
        if obj.is_locked:
            raise LockedError()
        if self.validator is not None:
            value = self.validator(obj, value)
        setattr(obj, self.name, value)


class Lockable:
    """Mixin holding the lock flag."""

    _locked = False

    @property
    def is_locked(self) -> bool:
        return self._locked

    def _check_not_locked(self):
        if self._locked:
            raise LockedError()
