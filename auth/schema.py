"""
auth/schema.py -- Suggested schema for the default realm configuration.

Table and column names match every RealmConfig default, so a realm needs no
configuration beyond the options it wants to switch on (roles_key,
users_pwchanged_column, password_expiry_days, ...). Existing databases with
other names keep their own mapping and set the *_source / *_column options.

The relationships are what the store discovers at runtime:
  User.user_roles / Role.user_roles -- one-to-many, outer join, one FK column
  UserRoles.user / UserRoles.role   -- the many-to-one reverse accessors
"""

from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), nullable=False, unique=True)
    password = Column(Text)
    name = Column(String(255))
    email = Column(String(255))
    deleted = Column(Integer, nullable=False, default=0, server_default="0")
    lastlogin = Column(DateTime)
    pw_changed = Column(DateTime)
    pw_reset_code = Column(String(255))

    user_roles = relationship("UserRoles", back_populates="user")


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    role = Column(String(255), nullable=False, unique=True)

    user_roles = relationship("UserRoles", back_populates="role")


class UserRoles(Base):
    __tablename__ = "user_roles"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)

    user = relationship("User", back_populates="user_roles")
    role = relationship("Role", back_populates="user_roles")
