"""
Relational persistence facade over SQLAlchemy.

Connections are configured from ``TMD_DATABASE_<NAME>_*`` environment
variables.  Inserts and updates are guarded by the record's 64-bit identity:
a new record must not carry one, an updated record must.
"""

from .config import ConnectionSettings
from .database import RelationalDatabase
from .entity import IdentityMixin
from .errors import (
    ConnectionFailure,
    FieldNotFound,
    IdentityAlreadySet,
    IdentityBlank,
    IdentityError,
    RelationalDatabaseError,
    SchemaRegistrationError,
    StoreError,
    TypeMismatch,
)
from .extension import Relational, get_database
from .identity import authorize_insert, authorize_update, has_identity, inspect_identity

__all__ = [
    "ConnectionSettings",
    "RelationalDatabase",
    "IdentityMixin",
    "Relational",
    "get_database",
    "inspect_identity",
    "has_identity",
    "authorize_insert",
    "authorize_update",
    "RelationalDatabaseError",
    "ConnectionFailure",
    "IdentityError",
    "FieldNotFound",
    "TypeMismatch",
    "IdentityAlreadySet",
    "IdentityBlank",
    "StoreError",
    "SchemaRegistrationError",
]
