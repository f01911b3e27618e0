"""
Identity checks performed before every insert and update.

A record may only be inserted while its identity is unset (``None`` or ``0``)
and only updated once the store has assigned one.  The identity attribute is
found through the SQLAlchemy mapper, so its declared column type is checked
as well as its runtime value.
"""

from __future__ import annotations

from typing import Any, Optional, Type

from sqlalchemy import BigInteger, inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.types import TypeEngine

from relational.errors import FieldNotFound, IdentityAlreadySet, IdentityBlank, TypeMismatch
from relational.logging_utils import get_logger

DEFAULT_IDENTITY_FIELD = "id"
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


def entity_name(record: Any) -> str:
    cls = record if isinstance(record, type) else type(record)
    return cls.__name__


def identity_field(record: Any) -> str:
    return getattr(record, "__identity_field__", DEFAULT_IDENTITY_FIELD)


def inspect_identity(
    record: Any,
    field_name: Optional[str] = None,
    expected_type: Type[TypeEngine] = BigInteger,
) -> int:
    """
    Return the identity value of ``record``; ``0`` means "not yet persisted".

    Raises :class:`FieldNotFound` when the record has no mapped column under
    ``field_name`` and :class:`TypeMismatch` when that column is not declared
    as ``expected_type`` or holds something other than a 64-bit integer.
    """

    field_name = field_name or identity_field(record)
    name = entity_name(record)

    try:
        mapper = sa_inspect(type(record))
    except NoInspectionAvailable:
        raise FieldNotFound(name, field_name) from None

    if field_name not in mapper.column_attrs:
        raise FieldNotFound(name, field_name)

    column_type = mapper.column_attrs[field_name].columns[0].type
    if not isinstance(column_type, expected_type):
        raise TypeMismatch(name, field_name, type(column_type).__name__)

    value = getattr(record, field_name)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeMismatch(name, field_name, type(value).__name__)
    if not INT64_MIN <= value <= INT64_MAX:
        raise TypeMismatch(name, field_name, "out-of-range integer")
    return value


def has_identity(record: Any) -> bool:
    return inspect_identity(record) != 0


def authorize_insert(record: Any) -> None:
    if inspect_identity(record) != 0:
        get_logger("identity").warning("Rejected insert of %s with pre-filled identity", entity_name(record))
        raise IdentityAlreadySet(entity_name(record), identity_field(record))


def authorize_update(record: Any) -> None:
    if inspect_identity(record) == 0:
        get_logger("identity").warning("Rejected update of %s with blank identity", entity_name(record))
        raise IdentityBlank(entity_name(record), identity_field(record))
