"""
tests/conftest.py -- Shared fixtures for credential store tests.

This module provides:
  - schema: in-memory SQLite Schema on the suggested mapping (auth/schema.py),
    seeded with users, roles and role assignments
  - store: CredentialStore with roles, password expiry and a soft-delete
    valid-user condition switched on
  - custom_schema / custom_store: a second mapping where every table and
    column name differs from the defaults

Seed data (suggested schema):
  dave  -- password "beer" (SHA-512), roles BeerDrinker + Motorcyclist
  bob   -- password "cider" (bcrypt), role CiderDrinker
  burt  -- password "bacharach" stored as plaintext (legacy row), no roles
  mark  -- password "wantscider", soft-deleted (deleted=1)
"""

from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, relationship

from auth.passwords import PasswordHasher
from auth.schema import Base, Role, User, UserRoles
from auth.store import CredentialStore
from core.config import RealmConfig
from core.database import Schema

# ---------------------------------------------------------------------------
# Custom-named mapping
# ---------------------------------------------------------------------------


class CustomBase(DeclarativeBase):
    pass


class Myuser(CustomBase):
    __tablename__ = "myuser"

    myid = Column(Integer, primary_key=True, autoincrement=True)
    myusername = Column(String(255), nullable=False, unique=True)
    mypassword = Column(Text)
    myresetcode = Column(String(255))

    links = relationship("MyuserRole", back_populates="member")


class Myrole(CustomBase):
    __tablename__ = "myrole"

    roleid = Column(Integer, primary_key=True, autoincrement=True)
    rolename = Column(String(255), nullable=False, unique=True)

    links = relationship("MyuserRole", back_populates="grant")


class MyuserRole(CustomBase):
    __tablename__ = "myuser_role"

    user_id = Column(Integer, ForeignKey("myuser.myid"), primary_key=True)
    role_id = Column(Integer, ForeignKey("myrole.roleid"), primary_key=True)

    member = relationship("Myuser", back_populates="links")
    grant = relationship("Myrole", back_populates="links")


CUSTOM_CONFIG = RealmConfig(
    users_source="myuser",
    roles_source="myrole",
    user_roles_source="myuser_role",
    users_username_column="myusername",
    users_password_column="mypassword",
    users_pwresetcode_column="myresetcode",
    roles_role_column="rolename",
    roles_key="roles",
)

DEFAULT_CONFIG = RealmConfig(
    roles_key="role",
    users_pwchanged_column="pw_changed",
    password_expiry_days=1,
    user_valid_conditions={"deleted": 0},
)

# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------


def _seed_default(schema: Schema) -> None:
    hasher = PasswordHasher()
    with schema.session() as session:
        roles = {name: Role(role=name) for name in ("BeerDrinker", "Motorcyclist", "CiderDrinker")}
        session.add_all(roles.values())

        dave = User(username="dave", password=hasher.encrypt_password("beer"), name="David Precious")
        bob = User(username="bob", password=hasher.encrypt_password("cider", "bcrypt"), name="Bob Smith")
        burt = User(username="burt", password="bacharach", name="Burt Bacharach")
        mark = User(username="mark", password=hasher.encrypt_password("wantscider"), deleted=1)
        session.add_all([dave, bob, burt, mark])

        session.add_all(
            [
                UserRoles(user=dave, role=roles["BeerDrinker"]),
                UserRoles(user=dave, role=roles["Motorcyclist"]),
                UserRoles(user=bob, role=roles["CiderDrinker"]),
                UserRoles(user=mark, role=roles["CiderDrinker"]),
            ]
        )
        session.commit()


def _seed_custom(schema: Schema) -> None:
    hasher = PasswordHasher()
    with schema.session() as session:
        admin = Myrole(rolename="admin")
        editor = Myrole(rolename="editor")
        alice = Myuser(myusername="alice", mypassword=hasher.encrypt_password("wonderland"))
        session.add_all([admin, editor, alice, MyuserRole(member=alice, grant=editor)])
        session.commit()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def default_config() -> RealmConfig:
    return DEFAULT_CONFIG


@pytest.fixture
def custom_config() -> RealmConfig:
    return CUSTOM_CONFIG


@pytest.fixture
def schema() -> Generator[Schema, None, None]:
    s = Schema("sqlite:///:memory:", Base)
    _seed_default(s)
    yield s
    s.close()


@pytest.fixture
def store(schema: Schema) -> CredentialStore:
    return CredentialStore(schema, DEFAULT_CONFIG)


@pytest.fixture
def custom_schema() -> Generator[Schema, None, None]:
    s = Schema("sqlite:///:memory:", CustomBase)
    _seed_custom(s)
    yield s
    s.close()


@pytest.fixture
def custom_store(custom_schema: Schema) -> CredentialStore:
    return CredentialStore(custom_schema, CUSTOM_CONFIG)
