from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Type, TypeVar, Union

from alembic.autogenerate import compare_metadata
from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Column, Table, delete, inspect as sa_inspect, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoInspectionAvailable, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.schema import sort_tables

from relational.config import ConnectionSettings
from relational.errors import ConnectionFailure, SchemaRegistrationError, StoreError
from relational.identity import authorize_insert, authorize_update, entity_name, identity_field, inspect_identity
from relational.logging_utils import get_logger, log_context

RecordType = TypeVar("RecordType")
T = TypeVar("T")

Criteria = Union[Mapping[str, Any], Sequence[Any], Any]


def _entity_class(entity: Any) -> type:
    return entity if isinstance(entity, type) else type(entity)


def _is_zero(value: Any) -> bool:
    return value is None or (isinstance(value, (bool, int, float, str, bytes)) and not value)


def _example_criteria(example: Any) -> Dict[str, Any]:
    # zero values (None, 0, "", False) are unset in a query-by-example
    mapper = sa_inspect(type(example))
    return {
        attr.key: getattr(example, attr.key)
        for attr in mapper.column_attrs
        if not _is_zero(getattr(example, attr.key))
    }


class RelationalDatabase:
    """
    CRUD facade over one SQLAlchemy engine, bound to a named connection.

    Outside a transaction every call runs in its own short-lived session and
    commits before returning.  Inside :meth:`transaction` the facade handed to
    the callback shares one session; writes are flushed and only committed
    when the callback returns.
    """

    def __init__(self, engine: Engine, connection_name: str, session: Optional[Session] = None) -> None:
        self._engine = engine
        self._connection_name = connection_name
        self._session = session
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def connect(cls, connection_name: str, **engine_options: Any) -> "RelationalDatabase":
        """
        Open the connection described by the ``TMD_DATABASE_<NAME>_*`` variables.

        Raises :class:`ConnectionFailure` instead of exiting when the
        configuration is incomplete or the server cannot be reached.
        """

        logger = get_logger("database")
        with log_context(connection=connection_name, action="connect"):
            settings = ConnectionSettings.from_environment(connection_name)
            logger.info("Connecting type=%s dsn=%s", settings.database_type, settings.redacted_dsn)
            engine = None
            try:
                engine = settings.create_engine(**engine_options)
                database = cls(engine, connection_name)
                database.ping()
            except ConnectionFailure:
                raise
            except StoreError as exc:
                engine.dispose()
                logger.error("Connection failed: %s", exc.detail)
                raise ConnectionFailure(connection_name, exc.detail) from exc.__cause__
            except Exception as exc:
                if engine is not None:
                    engine.dispose()
                logger.error("Connection failed: %s", exc)
                raise ConnectionFailure(connection_name, str(exc)) from exc
            logger.info("Connected")
            return database

    @classmethod
    def from_engine(cls, engine: Engine, connection_name: str = "default") -> "RelationalDatabase":
        return cls(engine, connection_name)

    @property
    def connection_name(self) -> str:
        return self._connection_name

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def in_transaction(self) -> bool:
        return self._session is not None

    def __repr__(self) -> str:
        scope = "transaction" if self.in_transaction else "engine"
        return f"<RelationalDatabase {self._connection_name!r} ({scope})>"

    def __enter__(self) -> "RelationalDatabase":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Dispose the engine's pool; transaction-scoped facades leave it alone."""
        if not self.in_transaction:
            self._engine.dispose()

    @contextmanager
    def _scope(self, operation: str) -> Iterator[Session]:
        if self._session is not None:
            try:
                yield self._session
                self._session.flush()
            except SQLAlchemyError as exc:
                raise StoreError(operation, str(exc), exc) from exc
            return

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(operation, str(exc), exc) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def ping(self) -> None:
        with self._scope("ping") as session:
            session.execute(text("SELECT 1"))

    def create(self, record: RecordType) -> RecordType:
        """Insert a record whose identity is unset; the store assigns it."""

        name = entity_name(record)
        logger = get_logger("database")
        with log_context(connection=self._connection_name, model=name, action="create"):
            authorize_insert(record)
            field = identity_field(record)
            cleared = getattr(record, field) == 0
            if cleared:
                # an explicit 0 would be inserted as a key; the store assigns it
                setattr(record, field, None)
            logger.info("Creating %s", name)
            try:
                with self._scope("create") as session:
                    session.add(record)
                    session.flush()
            except StoreError:
                if cleared:
                    setattr(record, field, 0)
                logger.exception("Failed to create %s", name)
                raise
            logger.info("Created %s target_id=%s", name, inspect_identity(record))
            return record

    def update(self, record: RecordType) -> RecordType:
        """Save a record that already carries an identity; returns the persisted instance."""

        name = entity_name(record)
        logger = get_logger("database")
        with log_context(connection=self._connection_name, model=name, action="update"):
            authorize_update(record)
            target_id = inspect_identity(record)
            logger.info("Updating %s target_id=%s", name, target_id)
            try:
                with self._scope("update") as session:
                    persisted = session.merge(record)
            except StoreError:
                logger.exception("Failed to update %s target_id=%s", name, target_id)
                raise
            logger.info("Updated %s target_id=%s", name, target_id)
            return persisted

    def delete_by_id(self, entity: Any, identity: Any) -> int:
        """Delete the row of ``entity`` whose primary key is ``identity``."""

        cls = _entity_class(entity)
        logger = get_logger("database")
        with log_context(connection=self._connection_name, model=cls.__name__, action="delete"):
            logger.info("Deleting %s target_id=%s", cls.__name__, identity)
            try:
                with self._scope("delete_by_id") as session:
                    primary_key = sa_inspect(cls).primary_key[0]
                    result = session.execute(delete(cls).where(primary_key == identity))
                    deleted = result.rowcount
            except StoreError:
                logger.exception("Failed to delete %s target_id=%s", cls.__name__, identity)
                raise
            if not deleted:
                logger.warning("Delete of %s matched no row target_id=%s", cls.__name__, identity)
            else:
                logger.info("Deleted %s target_id=%s", cls.__name__, identity)
            return deleted

    def select_by_id(self, entity: Type[RecordType], identity: Any) -> Optional[RecordType]:
        cls = _entity_class(entity)
        logger = get_logger("database")
        with log_context(connection=self._connection_name, model=cls.__name__, action="select_by_id"):
            with self._scope("select_by_id") as session:
                instance = session.get(cls, identity)
            logger.info("Fetched %s id=%s found=%s", cls.__name__, identity, instance is not None)
            return instance

    def select_all(
        self,
        entity: Type[RecordType],
        *,
        order_by: Optional[Union[Any, Sequence[Any]]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[RecordType]:
        return self.filter(entity, None, order_by=order_by, limit=limit, offset=offset)

    def filter(
        self,
        entity: Type[RecordType],
        criteria: Optional[Criteria],
        *,
        order_by: Optional[Union[Any, Sequence[Any]]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[RecordType]:
        """
        List rows of ``entity`` matching ``criteria``.

        ``criteria`` is a mapping of attribute name to value, an example
        instance whose non-zero column values must match, or a sequence of
        SQLAlchemy clauses.  Use a mapping to match ``0``, ``""`` or ``False``.
        An empty result is an empty list, never an error.
        """

        cls = _entity_class(entity)
        action = "list" if criteria is None else "filter"
        logger = get_logger("database")
        with log_context(connection=self._connection_name, model=cls.__name__, action=action):
            query = select(cls)
            try:
                if isinstance(criteria, Mapping):
                    query = query.filter_by(**criteria)
                elif isinstance(criteria, (list, tuple)):
                    for clause in criteria:
                        query = query.where(clause)
                elif criteria is not None:
                    query = query.filter_by(**_example_criteria(criteria))
            except NoInspectionAvailable:
                raise StoreError(action, f"unsupported filter criteria {type(criteria).__name__}") from None
            except SQLAlchemyError as exc:
                raise StoreError(action, str(exc), exc) from exc

            if order_by is not None:
                if isinstance(order_by, (list, tuple)):
                    query = query.order_by(*order_by)
                else:
                    query = query.order_by(order_by)
            if offset is not None:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)

            logger.info("Listing %s criteria=%s limit=%s offset=%s", cls.__name__, criteria, limit, offset)
            with self._scope(action) as session:
                results = list(session.scalars(query))
            logger.info("Listed %s count=%s", cls.__name__, len(results))
            return results

    def transaction(self, function: Callable[["RelationalDatabase"], T]) -> T:
        """
        Run ``function`` against a facade bound to one database transaction.

        The transaction commits when ``function`` returns and rolls back when
        it raises; the exception is re-raised, with bare SQLAlchemy errors
        wrapped in :class:`StoreError`.  Called on a transaction-scoped facade
        this opens a SAVEPOINT instead.
        """

        tx_logger = get_logger("transaction")
        with log_context(connection=self._connection_name, action="transaction"):
            if self._session is not None:
                try:
                    savepoint = self._session.begin_nested()
                except SQLAlchemyError as exc:
                    raise StoreError("transaction", str(exc), exc) from exc
                try:
                    result = function(self)
                except Exception:
                    tx_logger.info("Rolling back savepoint")
                    try:
                        savepoint.rollback()
                    except SQLAlchemyError as exc:
                        tx_logger.exception("Savepoint rollback failed")
                        raise StoreError("transaction", str(exc), exc) from exc
                    raise
                try:
                    savepoint.commit()
                except SQLAlchemyError as exc:
                    tx_logger.exception("Savepoint release failed")
                    raise StoreError("transaction", str(exc), exc) from exc
                return result

            session = self._session_factory()
            tx_database = RelationalDatabase(self._engine, self._connection_name, session=session)
            try:
                session.begin()
                tx_logger.debug("Transaction started")
                result = function(tx_database)
                session.commit()
                tx_logger.info("Transaction committed")
                return result
            except SQLAlchemyError as exc:
                session.rollback()
                tx_logger.exception("Transaction rolled back")
                raise StoreError("transaction", str(exc), exc) from exc
            except Exception:
                session.rollback()
                tx_logger.info("Transaction rolled back")
                raise
            finally:
                session.close()

    def _sync_table(self, connection: Connection, table: Table) -> List[str]:
        table.create(bind=connection, checkfirst=True)
        context = MigrationContext.configure(connection)
        operations = Operations(context)
        changes = []
        for diff in compare_metadata(context, table.metadata):
            # column modifications arrive as lists and are not applied
            if not isinstance(diff, tuple):
                continue
            if diff[0] == "add_column" and diff[2] == table.name and diff[1] == table.schema:
                column = diff[3]
                server_default = column.server_default.arg if column.server_default is not None else None
                operations.add_column(
                    table.name,
                    Column(column.name, column.type, nullable=column.nullable, server_default=server_default),
                    schema=table.schema,
                )
                changes.append(f"column {column.name}")
            elif diff[0] == "add_index" and diff[1].table is table:
                diff[1].create(bind=connection)
                changes.append(f"index {diff[1].name}")
        return changes

    def register_entities(self, *entities: type) -> List[str]:
        """
        Create or alter the tables of ``entities`` to match their mappings.

        Missing tables are created and existing tables gain the columns and
        indexes they lack.  Columns are never dropped or retyped.  Every
        entity is attempted; failures are collected and raised together as
        one :class:`SchemaRegistrationError`.
        """

        schema_logger = get_logger("schema")
        failures = []
        tables = []
        for entity in entities:
            table = getattr(entity, "__table__", None)
            if table is None:
                failures.append((getattr(entity, "__name__", repr(entity)), TypeError("not a mapped entity")))
            else:
                tables.append(table)

        registered = []
        with log_context(connection=self._connection_name, action="register_entities"):
            for table in sort_tables(tables):
                try:
                    if self._session is not None:
                        changes = self._sync_table(self._session.connection(), table)
                    else:
                        with self._engine.begin() as connection:
                            changes = self._sync_table(connection, table)
                except SQLAlchemyError as exc:
                    schema_logger.error("Failed to register table=%s: %s", table.name, exc)
                    failures.append((table.name, exc))
                    continue
                if changes:
                    schema_logger.info("Altered table=%s added=%s", table.name, ", ".join(changes))
                schema_logger.info("Registered table=%s", table.name)
                registered.append(table.name)

            if failures:
                raise SchemaRegistrationError(failures)
        return registered
