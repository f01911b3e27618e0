import threading
import time

import pytest
from flask import Flask

from relational import ConnectionFailure, Relational, RelationalDatabase, get_database
from relational.config import config
from tests.conftest import Widget
from tests.test_config import PRIMARY


class TestRelationalExtension:
    def test_extension_is_registered(self, app, database):
        state = app.extensions["relational"]
        assert isinstance(state["extension"], Relational)
        assert get_database() is database
        assert state["extension"].database is database

    def test_bound_database_is_usable(self, app):
        widget = get_database().create(Widget(name="from-app"))
        assert get_database().select_by_id(Widget, widget.id).name == "from-app"

    def test_lazy_connection_failure_is_raised(self):
        app = Flask(__name__)
        app.config.from_object(config["testing"])
        app.config["RELATIONAL_CONNECTION_NAME"] = "not_configured_anywhere"
        extension = Relational(app)

        with app.app_context():
            with pytest.raises(ConnectionFailure):
                extension.database

    def test_unregistered_app(self):
        app = Flask(__name__)
        with pytest.raises(RuntimeError, match="not registered"):
            Relational().get_database(app)

    def test_module_helper_on_unregistered_app(self):
        app = Flask(__name__)
        with app.app_context():
            with pytest.raises(RuntimeError, match="not registered"):
                get_database()

    def test_lazy_connection_is_opened_once(self, engine, monkeypatch):
        opened = []

        def slow_connect(connection_name):
            time.sleep(0.05)
            database = RelationalDatabase.from_engine(engine, connection_name)
            opened.append(database)
            return database

        monkeypatch.setattr(RelationalDatabase, "connect", staticmethod(slow_connect))
        app = Flask(__name__)
        app.config.from_object(config["testing"])
        extension = Relational(app)

        results = []
        threads = [threading.Thread(target=lambda: results.append(extension.get_database(app))) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(opened) == 1
        assert len(results) == 8
        assert all(result is opened[0] for result in results)

    def test_close_forgets_the_database(self, app):
        extension = app.extensions["relational"]["extension"]
        extension.close()
        assert app.extensions["relational"]["database"] is None


class TestCommands:
    def test_dsn_is_redacted(self, runner, monkeypatch):
        for key, value in PRIMARY.items():
            monkeypatch.setenv(key, value)

        result = runner.invoke(args=["relational", "dsn", "--name", "primary"])

        assert result.exit_code == 0
        assert "postgres: host=db.local port=5433" in result.output
        assert "s3cret" not in result.output

    def test_dsn_reports_missing_configuration(self, runner):
        result = runner.invoke(args=["relational", "dsn"])

        assert result.exit_code == 1
        assert "missing environment variables" in result.output

    def test_check_pings_bound_database(self, runner):
        result = runner.invoke(args=["relational", "check"])

        assert result.exit_code == 0
        assert "Connection 'test' is reachable" in result.output
