"""
core/database.py -- Schema handle: engine, session factory and mapped classes.

A Schema pairs a SQLAlchemy engine with the declarative base that maps the
application's tables. Credential stores receive a Schema rather than looking
one up globally, so a host can run several realms against different databases
(or different mappings of the same database) side by side.

Resultsets are the mapped classes of the declarative base, addressed by class
name (User, Role, UserRoles, ...). The name table is built once per Schema.

Usage:
    schema = Schema("sqlite:///auth.db", Base)
    with schema.session() as session:
        user_cls = schema.resultset("User")
        ...
    schema.close()

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

if TYPE_CHECKING:
    from core.config import Settings


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys are off by default in SQLite, which
    would let join rows outlive their user or role.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Schema:
    """Engine + declarative base for one database."""

    def __init__(self, db_url: str, base: type[DeclarativeBase], create_tables: bool = True) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self.base = base
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._resultsets = {mapper.class_.__name__: mapper.class_ for mapper in base.registry.mappers}
        if create_tables:
            base.metadata.create_all(self.engine)

    @classmethod
    def from_settings(cls, settings: Settings, base: type[DeclarativeBase]) -> Schema:
        return cls(settings.database_url, base)

    def session(self) -> Session:
        """Return a new Session. Use as a context manager; callers commit."""
        return self._sessionmaker()

    def resultset(self, name: str) -> type:
        """Return the mapped class called `name`. Raises LookupError if unknown."""
        try:
            return self._resultsets[name]
        except KeyError:
            known = ", ".join(sorted(self._resultsets)) or "none"
            raise LookupError(f"No mapped class named {name!r} (known: {known})") from None

    @property
    def resultset_names(self) -> list[str]:
        return sorted(self._resultsets)

    def close(self) -> None:
        self.engine.dispose()
