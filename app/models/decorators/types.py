import logging
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

EnumT = TypeVar("EnumT", bound=Enum)


class EnumStringType(TypeDecorator[EnumT]):
    """Persist an Enum by member name in a plain VARCHAR column so new members never need a migration."""

    impl = String(50)
    cache_ok = True

    def __init__(self, enum_class: type[EnumT], *args: Any, **kwargs: Any):
        self._missing_fails_on_load = kwargs.pop("missing_fails_on_load", True)
        super().__init__(*args, **kwargs)
        self._enum_class = enum_class
        self._logger = logging.getLogger(__name__)

    def _coerce(self, value: EnumT | str) -> EnumT | None:
        if isinstance(value, self._enum_class):
            return value
        # Raw strings come from payloads and hand written filters; accept member names and values.
        try:
            return self._enum_class[str(value)]
        except KeyError:
            pass
        try:
            return self._enum_class(value)
        except ValueError:
            return None

    def process_bind_param(self, value: EnumT | str | None, dialect: Any) -> str | None:
        if value is None:
            return None
        member = self._coerce(value)
        if member is None:
            self._logger.error(f"Invalid enum value: {value} for {self._enum_class}")
            return None
        return member.name

    def process_result_value(self, name: str | None, dialect: Any) -> EnumT | None:
        if name is None:
            return None
        member = self._coerce(name)
        if member is not None:
            return member
        if self._missing_fails_on_load:
            raise ValueError(f"Invalid enum value: {name} for {self._enum_class}")
        self._logger.warning(f"Invalid enum value: {name} for {self._enum_class}, returning value as is")
        return name  # type: ignore
