from typing import Optional

import pytest
from flask import Flask
from sqlalchemy import BigInteger, ForeignKey, Integer, String, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from relational import IdentityMixin, Relational, RelationalDatabase
from relational.config import config
from relational.logging_utils import shutdown_logger


class Base(DeclarativeBase):
    pass


class Widget(IdentityMixin, Base):
    __tablename__ = "widgets"

    name: Mapped[str] = mapped_column(String(50))
    colour: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)


class Part(IdentityMixin, Base):
    __tablename__ = "parts"

    widget_id: Mapped[int] = mapped_column(ForeignKey("widgets.id"))
    label: Mapped[str] = mapped_column(String(50))


class LegacyWidget(Base):
    """Identity declared as a plain 32-bit INTEGER."""

    __tablename__ = "legacy_widgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)


class Gadget(Base):
    """Natural string key, no ``id`` attribute at all."""

    __tablename__ = "gadgets"

    code: Mapped[str] = mapped_column(String(20), primary_key=True)


class Account(Base):
    __tablename__ = "accounts"
    __identity_field__ = "account_id"

    account_id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"), primary_key=True, autoincrement=True
    )
    owner: Mapped[str] = mapped_column(String(50))


ALL_ENTITIES = (Widget, Part, LegacyWidget, Gadget, Account)


@pytest.fixture(scope='function')
def engine():
    """Fresh in-memory SQLite database shared by every session of the test."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture(scope='function')
def database(engine):
    database = RelationalDatabase.from_engine(engine, "test")
    database.register_entities(*ALL_ENTITIES)
    yield database
    database.close()


@pytest.fixture(scope='function')
def app(database):
    """Flask application with the extension bound to the test database."""
    app = Flask(__name__)
    app.config.from_object(config['testing'])
    Relational(app, database=database)

    with app.app_context():
        yield app
    shutdown_logger()


@pytest.fixture(scope='function')
def runner(app):
    return app.test_cli_runner()
