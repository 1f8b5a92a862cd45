import enum
from typing import Type

from sqlalchemy import Enum as SAEnum


class CaseInsensitiveEnum(SAEnum):
    """Enum column stored as its lowercase ``value`` (VARCHAR, no native type).

    Gateway payloads and admin tools send status strings in whatever case
    they like ("CONFIRMED", "Refunded"); binding normalises them so the
    column only ever holds canonical values.
    """

    cache_ok = True

    def __init__(self, enum_cls: Type[enum.Enum], **kwargs):
        self._enum_cls = enum_cls
        self._enum_kwargs = kwargs.copy()
        kwargs.setdefault("values_callable", lambda members: [m.value for m in members])
        kwargs.setdefault("native_enum", False)
        kwargs.setdefault("validate_strings", True)
        super().__init__(enum_cls, **kwargs)

    def adapt(self, impltype, **kw):
        params = {**self._enum_kwargs, **kw}
        return CaseInsensitiveEnum(self._enum_cls, **params)

    def bind_processor(self, dialect):
        parent = super().bind_processor(dialect)

        def process(value):
            if value is None:
                return None
            if isinstance(value, str):
                value = self._enum_cls(value.strip().lower())
            if parent:
                return parent(value)
            return value.value

        return process

    def result_processor(self, dialect, coltype):
        parent = super().result_processor(dialect, coltype)

        def process(value):
            if value is None:
                return None
            if isinstance(value, str):
                value = value.lower()
            if parent:
                return parent(value)
            return self._enum_cls(value)

        return process
