import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import SessionTransaction

from relational import (
    IdentityAlreadySet,
    IdentityBlank,
    RelationalDatabase,
    SchemaRegistrationError,
    StoreError,
)
from tests.conftest import Gadget, Part, Widget


class TestCreateAndUpdate:
    """Identity-guarded writes."""

    def test_create_assigns_identity(self, database):
        widget = database.create(Widget(id=0, name="a"))
        assert widget.id > 0
        assert database.select_by_id(Widget, widget.id).name == "a"

    def test_create_with_identity_is_rejected_and_nothing_is_written(self, database):
        with pytest.raises(IdentityAlreadySet):
            database.create(Widget(id=5, name="a"))
        assert database.select_all(Widget) == []

    def test_update_with_blank_identity_is_rejected(self, database):
        with pytest.raises(IdentityBlank):
            database.update(Widget(id=0, name="a"))
        with pytest.raises(IdentityBlank):
            database.update(Widget(name="a"))

    def test_update_saves_changes(self, database):
        widget = database.create(Widget(name="before"))
        widget.name = "after"
        persisted = database.update(widget)

        assert persisted.id == widget.id
        assert database.select_by_id(Widget, widget.id).name == "after"
        assert len(database.select_all(Widget)) == 1

    def test_update_of_unknown_identity_inserts_the_row(self, database):
        database.update(Widget(id=42, name="saved"))
        assert database.select_by_id(Widget, 42).name == "saved"

    def test_store_errors_are_wrapped(self, database):
        with pytest.raises(StoreError) as excinfo:
            database.create(Widget(name=None))

        error = excinfo.value
        assert error.operation == "create"
        assert isinstance(error.__cause__, IntegrityError)
        assert str(error).startswith("relational database: ")
        assert database.select_all(Widget) == []

    def test_failed_create_restores_the_blank_identity(self, database):
        widget = Widget(id=0, name=None)
        with pytest.raises(StoreError):
            database.create(widget)
        assert widget.id == 0


class TestDeleteAndSelect:
    def test_delete_by_id(self, database):
        widget = database.create(Widget(name="a"))
        assert database.delete_by_id(Widget, widget.id) == 1
        assert database.select_by_id(Widget, widget.id) is None

    def test_delete_accepts_an_instance_as_entity(self, database):
        widget = database.create(Widget(name="a"))
        assert database.delete_by_id(widget, widget.id) == 1

    def test_delete_of_missing_row_affects_nothing(self, database):
        assert database.delete_by_id(Widget, 999) == 0

    def test_select_by_id_uses_the_supplied_id(self, database):
        first = database.create(Widget(name="first"))
        second = database.create(Widget(name="second"))

        assert database.select_by_id(Widget, second.id).name == "second"
        assert database.select_by_id(Widget, first.id).name == "first"

    def test_select_by_id_not_found_is_none(self, database):
        assert database.select_by_id(Widget, 10) is None

    def test_select_all_on_empty_table(self, database):
        assert database.select_all(Widget) == []

    def test_select_all_with_paging(self, database):
        for name in ("c", "a", "d", "b"):
            database.create(Widget(name=name))

        names = [w.name for w in database.select_all(Widget, order_by=Widget.name)]
        assert names == ["a", "b", "c", "d"]

        page = database.select_all(Widget, order_by=[Widget.name.desc()], limit=2, offset=1)
        assert [w.name for w in page] == ["c", "b"]

    def test_selected_records_are_readable_after_the_session_closes(self, database):
        database.create(Widget(name="a", colour="red"))
        (widget,) = database.select_all(Widget)
        assert widget.colour == "red"


class TestFilter:
    @pytest.fixture
    def widgets(self, database):
        return [
            database.create(Widget(name="alpha", colour="red")),
            database.create(Widget(name="beta", colour="blue")),
            database.create(Widget(name="gamma", colour="red")),
        ]

    def test_filter_by_mapping(self, database, widgets):
        result = database.filter(Widget, {"colour": "red"}, order_by=Widget.id)
        assert [w.name for w in result] == ["alpha", "gamma"]

    def test_filter_by_example_ignores_unset_fields(self, database, widgets):
        result = database.filter(Widget, Widget(colour="blue"))
        assert [w.name for w in result] == ["beta"]

    def test_filter_by_example_ignores_zero_identity(self, database, widgets):
        result = database.filter(Widget, Widget(id=0, colour="red"), order_by=Widget.id)
        assert [w.name for w in result] == ["alpha", "gamma"]

    def test_filter_by_example_ignores_empty_strings(self, database, widgets):
        assert len(database.filter(Widget, Widget(name="", colour="blue"))) == 1

    def test_filter_by_clauses(self, database, widgets):
        result = database.filter(Widget, [Widget.name.like("%a"), Widget.colour == "red"], order_by=Widget.name)
        assert [w.name for w in result] == ["alpha", "gamma"]

    def test_filter_without_match_is_empty(self, database, widgets):
        assert database.filter(Widget, {"colour": "green"}) == []

    def test_filter_on_unknown_attribute_is_a_store_error(self, database):
        with pytest.raises(StoreError):
            database.filter(Widget, {"weight": 3})

    def test_filter_with_unsupported_criteria(self, database):
        with pytest.raises(StoreError):
            database.filter(Widget, 42)


class TestTransaction:
    def test_commit_makes_all_writes_visible(self, database):
        def work(tx):
            assert tx.in_transaction
            assert tx.connection_name == database.connection_name
            widget = tx.create(Widget(name="w"))
            tx.create(Part(widget_id=widget.id, label="p"))
            return widget.id

        widget_id = database.transaction(work)

        assert database.select_by_id(Widget, widget_id).name == "w"
        assert [p.label for p in database.filter(Part, {"widget_id": widget_id})] == ["p"]

    def test_error_rolls_back_every_write(self, database):
        def work(tx):
            tx.create(Widget(name="one"))
            tx.create(Widget(name="two"))
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            database.transaction(work)

        assert database.select_all(Widget) == []

    def test_store_error_rolls_back_earlier_writes(self, database):
        def work(tx):
            tx.create(Widget(name="kept?"))
            tx.create(Widget(name=None))

        with pytest.raises(StoreError):
            database.transaction(work)

        assert database.select_all(Widget) == []

    def test_writes_are_visible_inside_the_transaction(self, database):
        def work(tx):
            tx.create(Widget(name="inside"))
            return [w.name for w in tx.select_all(Widget)]

        assert database.transaction(work) == ["inside"]

    def test_update_and_delete_inside_transaction(self, database):
        widget = database.create(Widget(name="old"))
        doomed = database.create(Widget(name="doomed"))

        def work(tx):
            widget.name = "new"
            tx.update(widget)
            tx.delete_by_id(Widget, doomed.id)

        database.transaction(work)

        assert [w.name for w in database.select_all(Widget)] == ["new"]

    def test_nested_transaction_rolls_back_to_savepoint(self, database):
        def inner(tx):
            tx.create(Widget(name="drop"))
            raise ValueError("inner")

        def outer(tx):
            tx.create(Widget(name="keep"))
            with pytest.raises(ValueError):
                tx.transaction(inner)

        database.transaction(outer)

        assert [w.name for w in database.select_all(Widget)] == ["keep"]

    def test_savepoint_release_failure_is_a_store_error(self, database, monkeypatch):
        release = SessionTransaction.commit

        def failing_release(self, _to_root=False):
            if self.nested:
                raise OperationalError("RELEASE SAVEPOINT sa_savepoint_1", {}, Exception("savepoint lost"))
            return release(self, _to_root)

        monkeypatch.setattr(SessionTransaction, "commit", failing_release)

        def outer(tx):
            tx.create(Widget(name="outer"))
            tx.transaction(lambda inner: inner.create(Widget(name="inner")))

        with pytest.raises(StoreError) as excinfo:
            database.transaction(outer)

        assert excinfo.value.operation == "transaction"
        assert isinstance(excinfo.value.__cause__, OperationalError)
        assert database.select_all(Widget) == []

    def test_close_on_transaction_facade_keeps_engine(self, database):
        database.transaction(lambda tx: tx.close())
        database.ping()


class TestRegisterEntities:
    def test_tables_are_created_in_dependency_order(self, engine):
        database = RelationalDatabase.from_engine(engine, "fresh")
        assert database.register_entities(Part, Widget) == ["widgets", "parts"]

        database.create(Widget(name="a"))
        assert len(database.select_all(Widget)) == 1

    def test_registration_is_idempotent(self, database):
        assert database.register_entities(Widget) == ["widgets"]

    def test_failures_are_aggregated(self, engine):
        database = RelationalDatabase.from_engine(engine, "fresh")

        with pytest.raises(SchemaRegistrationError) as excinfo:
            database.register_entities(Gadget, object)

        assert [name for name, _ in excinfo.value.failures] == ["object"]
        # the valid entity is still registered
        assert database.select_all(Gadget) == []

    def test_existing_table_gains_missing_columns(self, engine):
        with engine.begin() as connection:
            connection.execute(text("CREATE TABLE widgets (id INTEGER PRIMARY KEY, name VARCHAR(50) NOT NULL)"))
        database = RelationalDatabase.from_engine(engine, "drifted")

        assert database.register_entities(Widget) == ["widgets"]

        columns = {column["name"] for column in inspect(engine).get_columns("widgets")}
        assert columns == {"id", "name", "colour"}
        widget = database.create(Widget(name="a", colour="red"))
        assert database.select_by_id(Widget, widget.id).colour == "red"

    def test_drift_that_cannot_be_applied_is_reported(self, engine):
        with engine.begin() as connection:
            connection.execute(text("CREATE TABLE widgets (id INTEGER PRIMARY KEY)"))
        database = RelationalDatabase.from_engine(engine, "drifted")

        # SQLite cannot add a NOT NULL column without a default
        with pytest.raises(SchemaRegistrationError) as excinfo:
            database.register_entities(Widget)

        assert [name for name, _ in excinfo.value.failures] == ["widgets"]


class TestConnectionDescriptor:
    def test_properties(self, database, engine):
        assert database.connection_name == "test"
        assert database.engine is engine
        assert not database.in_transaction
        assert repr(database) == "<RelationalDatabase 'test' (engine)>"

    def test_context_manager_disposes_engine(self, engine):
        with RelationalDatabase.from_engine(engine, "ctx") as database:
            database.ping()
