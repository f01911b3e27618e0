from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import Mapped, mapped_column

from relational.identity import inspect_identity

# SQLite only auto-assigns rowids for columns declared exactly INTEGER
IdentityType = BigInteger().with_variant(Integer(), "sqlite")


class IdentityMixin:
    """
    Gives a declarative entity a 64-bit ``id`` primary key assigned by the store.

    Entities that keep their identity under another attribute name set
    ``__identity_field__`` instead of using this mixin.
    """

    __identity_field__ = "id"

    id: Mapped[int] = mapped_column(IdentityType, primary_key=True, autoincrement=True)

    @property
    def identity(self) -> int:
        return inspect_identity(self)

    @property
    def is_persisted(self) -> bool:
        return self.identity != 0
