from __future__ import annotations

import threading
from typing import Optional

from flask import Flask, current_app

from relational.commands import relational_cli
from relational.database import RelationalDatabase
from relational.logging_utils import get_logger, init_logger

EXTENSION_KEY = "relational"


class Relational:
    """
    Flask extension binding one :class:`RelationalDatabase` per application.

    The connection is opened lazily, on first access to :attr:`database`,
    from ``RELATIONAL_CONNECTION_NAME``.  A ready facade can be supplied to
    :meth:`init_app` instead, which is how tests bind an in-memory engine.
    """

    def __init__(self, app: Optional[Flask] = None, database: Optional[RelationalDatabase] = None) -> None:
        if app is not None:
            self.init_app(app, database=database)

    def init_app(self, app: Flask, database: Optional[RelationalDatabase] = None) -> None:
        app.config.setdefault("RELATIONAL_CONNECTION_NAME", "DEFAULT")
        app.extensions[EXTENSION_KEY] = {"extension": self, "database": database, "lock": threading.Lock()}
        app.cli.add_command(relational_cli)
        init_logger(app)
        get_logger("connection").debug(
            "Relational extension registered connection=%s", app.config["RELATIONAL_CONNECTION_NAME"]
        )

    @staticmethod
    def _state(app: Flask) -> dict:
        try:
            return app.extensions[EXTENSION_KEY]
        except KeyError:
            raise RuntimeError("Relational extension is not registered on this application") from None

    def get_database(self, app: Optional[Flask] = None) -> RelationalDatabase:
        app = app or current_app._get_current_object()  # type: ignore[attr-defined]
        state = self._state(app)
        if state["database"] is None:
            with state["lock"]:
                if state["database"] is None:
                    state["database"] = RelationalDatabase.connect(app.config["RELATIONAL_CONNECTION_NAME"])
        return state["database"]

    @property
    def database(self) -> RelationalDatabase:
        return self.get_database()

    def close(self, app: Optional[Flask] = None) -> None:
        app = app or current_app._get_current_object()  # type: ignore[attr-defined]
        state = self._state(app)
        with state["lock"]:
            if state["database"] is not None:
                state["database"].close()
                state["database"] = None


def get_database() -> RelationalDatabase:
    """Return the facade bound to the current Flask application."""
    app = current_app._get_current_object()  # type: ignore[attr-defined]
    return Relational._state(app)["extension"].get_database(app)
