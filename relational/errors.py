"""
Error kinds raised by the relational database facade.

Every error carries the ``relational database:`` prefix in its message so log
lines and tracebacks can be traced back to this layer.  Driver exceptions are
wrapped in :class:`StoreError` with the original kept as ``__cause__``.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

ERROR_PREFIX = "relational database"


class RelationalDatabaseError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"{ERROR_PREFIX}: {detail}")


class ConnectionFailure(RelationalDatabaseError):
    """The connection could not be configured or the server is unreachable."""

    def __init__(self, connection_name: str, detail: str) -> None:
        self.connection_name = connection_name
        super().__init__(f'connection "{connection_name}": {detail}')


class IdentityError(RelationalDatabaseError):
    def __init__(self, entity_name: str, field_name: str, detail: str) -> None:
        self.entity_name = entity_name
        self.field_name = field_name
        super().__init__(detail)


class FieldNotFound(IdentityError):
    def __init__(self, entity_name: str, field_name: str) -> None:
        super().__init__(
            entity_name,
            field_name,
            f'the "{entity_name}" entity has no mapped "{field_name}" identity field',
        )


class TypeMismatch(IdentityError):
    def __init__(self, entity_name: str, field_name: str, found: str) -> None:
        self.found = found
        super().__init__(
            entity_name,
            field_name,
            f'the "{entity_name}" entity {field_name} field is not a 64-bit integer (found {found})',
        )


class IdentityAlreadySet(IdentityError):
    def __init__(self, entity_name: str, field_name: str) -> None:
        super().__init__(
            entity_name,
            field_name,
            f'it is not possible to insert a model "{entity_name}" with the pre-filled {field_name} field',
        )


class IdentityBlank(IdentityError):
    def __init__(self, entity_name: str, field_name: str) -> None:
        super().__init__(
            entity_name,
            field_name,
            f'it is not possible to update a model "{entity_name}" with the blank {field_name} field',
        )


class StoreError(RelationalDatabaseError):
    """A failure reported by the underlying store (SQLAlchemy / DBAPI)."""

    def __init__(self, operation: str, detail: str, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        super().__init__(detail)
        if cause is not None:
            self.__cause__ = cause


class SchemaRegistrationError(StoreError):
    """One or more entities could not be registered; ``failures`` lists them."""

    def __init__(self, failures: List[Tuple[str, BaseException]]) -> None:
        self.failures = list(failures)
        names = ", ".join(name for name, _ in self.failures)
        super().__init__(
            "register_entities",
            f"failed to register {len(self.failures)} entit{'y' if len(self.failures) == 1 else 'ies'}: {names}",
            self.failures[0][1] if self.failures else None,
        )
