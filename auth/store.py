"""
auth/store.py -- Credential store over a configurable users/roles schema.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; _row_to_dict is the mapper. Callers get
plain dicts keyed by column name and never touch the ORM rows.

Schema discovery:
  The realm names three logical tables (users, roles, user_roles). Each maps
  to a class of the Schema's declarative base. The relationships between
  them are not configured: they are read from the SQLAlchemy mappers the first
  time roles are needed and kept in a RelationshipBindings for the life of the
  store. A qualifying relationship on the user (or role) class:
    - targets the join class
    - is one-to-many with a list accessor
    - is an outer join (innerjoin=False)
    - joins on exactly one column pair
  Zero or several candidates raise RelationshipDiscoveryError. The reverse
  accessors on the join class are the many-to-one relationships whose column
  pairs mirror the forward ones.

Transactions:
  Each public call uses its own Session. Role changes in update_user() are
  committed one at a time, so a failure part-way through leaves the earlier
  role changes in place. Concurrent updates of one user are last-writer-wins.

Security:
  All queries are built with SQLAlchemy expressions. Column names from the
  realm config are resolved against the mapper before use; unknown names raise
  ConfigurationError instead of reaching SQL.

Layer rule: may import from core/ (kernel). Nothing in core/ imports auth/.
"""

from __future__ import annotations

import logging
import operator
from datetime import datetime, timezone
from functools import cached_property
from typing import Any, Optional

from sqlalchemy import inspect, select
from sqlalchemy.orm import Session, configure_mappers, selectinload
from sqlalchemy.orm.interfaces import MANYTOONE, ONETOMANY

from auth.exceptions import ConfigurationError, MissingUsernameError, RelationshipDiscoveryError
from auth.models import RelationshipBindings, ResultsetKind
from auth.passwords import DUMMY_HASH, PasswordHasher
from core.config import RealmConfig
from core.database import Schema

# Generic keys callers use regardless of the realm's column names
USERNAME_KEY = "username"
PASSWORD_KEY = "password"
RESET_CODE_KEY = "pw_reset_code"

# user_valid_conditions operators: {"column": {"<": 1}}
_OPERATORS = {
    "=": operator.eq,
    "==": operator.eq,
    "!=": operator.ne,
    "<>": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "-in": lambda column, value: column.in_(value),
    "-not_in": lambda column, value: column.not_in(value),
    "-like": lambda column, value: column.like(value),
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def camelize(source: str) -> str:
    """user_roles -> UserRoles. Only the first letter of each part changes."""
    return "".join(part[:1].upper() + part[1:] for part in source.split("_"))


def _as_datetime(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp (datetime or ISO 8601 text) into an aware datetime.

    Naive values are taken as UTC, which is how the store writes them.
    """
    if value is None or value == "":
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _column_key(column) -> tuple[str, str]:
    return column.table.name, column.name


# ---------------------------------------------------------------------------
# Relationship discovery
# ---------------------------------------------------------------------------


def discover_user_roles_relationship(source_cls: type, join_cls: type) -> str:
    """Return the name of the relationship from source_cls to the join class.

    Raises RelationshipDiscoveryError unless exactly one relationship qualifies.
    """
    configure_mappers()
    matches = [
        rel.key
        for rel in inspect(source_cls).relationships
        if rel.mapper.class_ is join_cls
        and rel.direction is ONETOMANY
        and rel.uselist
        and not rel.innerjoin
        and len(rel.local_remote_pairs) == 1
    ]
    if len(matches) != 1:
        found = ", ".join(sorted(matches)) or "none"
        raise RelationshipDiscoveryError(
            f"Expected exactly one one-to-many outer-join relationship from "
            f"{source_cls.__name__} to {join_cls.__name__} on a single column; found: {found}"
        )
    return matches[0]


def discover_reverse_relationship(source_cls: type, join_cls: type, relname: str) -> str:
    """Return the relationship on join_cls that points back along source_cls.relname."""
    forward = inspect(source_cls).relationships[relname]
    wanted = {(_column_key(remote), _column_key(local)) for local, remote in forward.local_remote_pairs}
    matches = [
        rel.key
        for rel in inspect(join_cls).relationships
        if rel.mapper.class_ is source_cls
        and rel.direction is MANYTOONE
        and {(_column_key(local), _column_key(remote)) for local, remote in rel.local_remote_pairs} == wanted
    ]
    if len(matches) != 1:
        found = ", ".join(sorted(matches)) or "none"
        raise RelationshipDiscoveryError(
            f"Expected exactly one many-to-one relationship from {join_cls.__name__} "
            f"back to {source_cls.__name__} (reverse of {relname!r}); found: {found}"
        )
    return matches[0]


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Users, passwords and role membership for one realm.

    Usage:
        store = CredentialStore(schema, RealmConfig(roles_key="roles"))
        store.create_user(username="dave", password="beer", roles={"BeerDrinker": True})
        store.authenticate("dave", "beer")        # True
        store.get_user_roles("dave")              # ["BeerDrinker"]
        store.get_user_details("dave")["roles"]   # {"BeerDrinker": True}
    """

    def __init__(
        self,
        schema: Schema,
        config: Optional[RealmConfig] = None,
        *,
        disable_roles: bool = False,
        hasher: Optional[PasswordHasher] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.schema = schema
        self.config = config or RealmConfig()
        self.disable_roles = disable_roles
        self.hasher = hasher or PasswordHasher()
        self.logger = logger or logging.getLogger("realmauth.store")

        cfg = self.config
        self._resultset_names: dict[ResultsetKind, str] = {
            ResultsetKind.USER: cfg.users_resultset or camelize(cfg.users_source),
            ResultsetKind.ROLE: cfg.roles_resultset or camelize(cfg.roles_source),
            ResultsetKind.USER_ROLE: cfg.user_roles_resultset or camelize(cfg.user_roles_source),
        }

    # ------------------------------------------------------------------
    # Schema introspection
    # ------------------------------------------------------------------

    def resultset(self, kind: ResultsetKind) -> type:
        """Return the mapped class configured for `kind`."""
        name = self._resultset_names[kind]
        try:
            return self.schema.resultset(name)
        except LookupError as e:
            raise ConfigurationError(f"{kind.value} resultset: {e}") from None

    @cached_property
    def bindings(self) -> Optional[RelationshipBindings]:
        """Relationship names between users, roles and the join class.

        None when role support is disabled. Computed on first use.
        """
        if self.disable_roles:
            return None
        join_cls = self.resultset(ResultsetKind.USER_ROLE)
        user_cls = self.resultset(ResultsetKind.USER)
        role_cls = self.resultset(ResultsetKind.ROLE)

        user_user_roles = discover_user_roles_relationship(user_cls, join_cls)
        role_user_roles = discover_user_roles_relationship(role_cls, join_cls)
        bindings = RelationshipBindings(
            user_user_roles=user_user_roles,
            role_user_roles=role_user_roles,
            user=discover_reverse_relationship(user_cls, join_cls, user_user_roles),
            role=discover_reverse_relationship(role_cls, join_cls, role_user_roles),
        )
        self.logger.debug("Discovered role relationships: %s", bindings)
        return bindings

    def _attribute_key(self, cls: type, column_name: str) -> str:
        """Map a column name (or attribute name) to the mapped attribute key."""
        for prop in inspect(cls).column_attrs:
            if prop.key == column_name or any(c.name == column_name for c in prop.columns):
                return prop.key
        raise ConfigurationError(f"{cls.__name__} has no column {column_name!r}")

    def _column(self, cls: type, column_name: str):
        return getattr(cls, self._attribute_key(cls, column_name))

    def _conditions(self, cls: type, conditions: dict[str, Any]) -> list:
        """Translate a {column: value} dict into SQLAlchemy criteria."""
        criteria = []
        for name, value in conditions.items():
            column = self._column(cls, name)
            if isinstance(value, dict):
                for op, operand in value.items():
                    try:
                        criteria.append(_OPERATORS[op](column, operand))
                    except KeyError:
                        raise ConfigurationError(f"Unsupported condition operator {op!r} on {name!r}") from None
            elif isinstance(value, (list, tuple, set)):
                criteria.append(column.in_(list(value)))
            elif value is None:
                criteria.append(column.is_(None))
            else:
                criteria.append(column == value)
        return criteria

    # ------------------------------------------------------------------
    # User lookup
    # ------------------------------------------------------------------

    def _search_column(self, column: str) -> str:
        if column == USERNAME_KEY:
            return self.config.users_username_column
        if column == RESET_CODE_KEY and self.config.users_pwresetcode_column:
            return self.config.users_pwresetcode_column
        return column

    def _find_user(self, session: Session, column: str, value: Any, *options):
        cls = self.resultset(ResultsetKind.USER)
        conditions = {**self.config.user_valid_conditions, self._search_column(column): value}
        stmt = select(cls).where(*self._conditions(cls, conditions)).options(*options)
        return session.scalars(stmt).first()

    def find_user(self, column: str, value: Any, *options):
        """Return the first user row where `column` equals `value`, or None.

        "username" and "pw_reset_code" resolve to the configured columns; any
        other name is used as-is. user_valid_conditions always apply. Loader
        options (e.g. selectinload) are passed through to the query.
        """
        with self.schema.session() as session:
            return self._find_user(session, column, value, *options)

    def get_user_details(self, username: Optional[str]) -> Optional[dict[str, Any]]:
        """Return the user's columns as a dict, or None if there is no such user.

        The password-changed column is parsed to a datetime when configured.
        With roles_key set, the user's roles are attached as {name: True}.
        """
        if username is None:
            return None
        with self.schema.session() as session:
            row = self._find_user(session, USERNAME_KEY, username)
            if row is None:
                self.logger.debug("No such user %s", username)
                return None
            user = _row_to_dict(row)

        pwchanged = self.config.users_pwchanged_column
        if pwchanged and user.get(pwchanged):
            user[pwchanged] = _as_datetime(user[pwchanged])

        roles_key = self.config.roles_key
        if roles_key and self.bindings is not None:
            user[roles_key] = {role: True for role in self.get_user_roles(username) or []}
        return user

    def get_user_by_code(self, code: str) -> Optional[str]:
        """Return the username holding the password reset code, or None."""
        if not code:
            return None
        with self.schema.session() as session:
            row = self._find_user(session, RESET_CODE_KEY, code)
            if row is None:
                return None
            cls = type(row)
            return getattr(row, self._attribute_key(cls, self.config.users_username_column))

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str, lastlogin: bool = False) -> bool:
        """Check a username/password pair.

        Unknown users still run the hasher against DUMMY_HASH so the response
        time does not reveal whether the username exists. With lastlogin=True a
        successful login stamps the last-login column.
        """
        user = self.get_user_details(username)
        if user is None:
            self.hasher.match_password(password, DUMMY_HASH)
            return False
        if not self.hasher.match_password(password, user.get(self.config.users_password_column)):
            return False
        if lastlogin:
            self.update_user(username, **{self.config.users_lastlogin_column: _utcnow()})
        return True

    def _password_fields(self, password: str) -> dict[str, Any]:
        fields: dict[str, Any] = {
            self.config.users_password_column: self.hasher.encrypt_password(
                password, self.config.encryption_algorithm
            )
        }
        if self.config.users_pwchanged_column:
            fields[self.config.users_pwchanged_column] = _utcnow()
        return fields

    def set_user_password(self, username: str, password: str) -> Optional[dict[str, Any]]:
        """Hash and store a new password. Returns the updated user details."""
        return self._update_user(username, self._password_fields(password))

    def password_expired(self, user: dict[str, Any]) -> bool:
        """Return True if the user's password is older than password_expiry_days.

        A user with no recorded change time is reported expired. Raises
        ConfigurationError when expiry is on but users_pwchanged_column is not set.
        """
        expiry = self.config.password_expiry_days
        if not expiry:
            return False
        pwchanged = self.config.users_pwchanged_column
        if not pwchanged:
            raise ConfigurationError("password_expiry_days is set but users_pwchanged_column is not configured")
        last_changed = _as_datetime(user.get(pwchanged))
        if last_changed is None:
            return True
        days = (_utcnow().date() - last_changed.astimezone(timezone.utc).date()).days
        return days > expiry

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def create_user(self, **fields) -> Optional[dict[str, Any]]:
        """Insert a user, then apply the remaining fields as update_user() does.

        A "password" field is hashed before it is stored. Raises
        MissingUsernameError without a username and
        sqlalchemy.exc.IntegrityError if the username already exists.
        """
        username = fields.pop(USERNAME_KEY, None)
        if not username:
            raise MissingUsernameError("Username needs to be specified for create_user")
        password = fields.pop(PASSWORD_KEY, None)
        if password is not None:
            fields.update(self._password_fields(password))

        cls = self.resultset(ResultsetKind.USER)
        with self.schema.session() as session:
            session.add(cls(**{self._attribute_key(cls, self.config.users_username_column): username}))
            session.commit()
        self.logger.info("Created user %s", username)
        return self._update_user(username, fields)

    def update_user(self, username: str, /, **fields) -> Optional[dict[str, Any]]:
        """Update a user's columns and, with roles_key configured, their roles.

        The roles_key value is the complete desired role set ({name: truthy}).
        A "password" field is hashed like in set_user_password(). Returns the
        refreshed user details (under the new username if it changed), or None
        if the user does not exist.
        """
        password = fields.pop(PASSWORD_KEY, None)
        if password is not None:
            fields.update(self._password_fields(password))
        return self._update_user(username, fields)

    def _update_user(self, username: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        # fields are column-level: password values are already hashed here
        if not username:
            raise MissingUsernameError("Username to update needs to be specified")
        cfg = self.config
        cls = self.resultset(ResultsetKind.USER)

        with self.schema.session() as session:
            user = self._find_user(session, USERNAME_KEY, username)
            if user is None:
                self.logger.debug("No such user %s to update", username)
                return None

            if cfg.roles_key and cfg.roles_key in fields:
                new_roles = fields.pop(cfg.roles_key)
                if self.bindings is None:
                    self.logger.debug("Roles disabled; ignoring %s for %s", cfg.roles_key, username)
                elif new_roles is not None:
                    self._sync_roles(session, user, username, new_roles)

            if cfg.users_pwresetcode_column and RESET_CODE_KEY in fields:
                fields[cfg.users_pwresetcode_column] = fields.pop(RESET_CODE_KEY)
            if USERNAME_KEY in fields and cfg.users_username_column != USERNAME_KEY:
                fields[cfg.users_username_column] = fields.pop(USERNAME_KEY)

            for name, value in fields.items():
                setattr(user, self._attribute_key(cls, name), value)
            session.commit()

        new_username = fields.get(cfg.users_username_column)
        return self.get_user_details(new_username or username)

    def _sync_roles(self, session: Session, user, username: str, new_roles: dict[str, Any]) -> None:
        """Add and remove join rows so the user holds exactly the truthy roles."""
        bindings = self.bindings
        cfg = self.config
        role_cls = self.resultset(ResultsetKind.ROLE)
        join_cls = self.resultset(ResultsetKind.USER_ROLE)
        user_cls = type(user)
        role_key = self._attribute_key(role_cls, cfg.roles_role_column)

        existing = {getattr(getattr(link, bindings.role), role_key) for link in getattr(user, bindings.user_user_roles)}
        known = set()

        for role in session.scalars(select(role_cls)).all():
            role_name = getattr(role, role_key)
            known.add(role_name)
            if new_roles.get(role_name) and role_name not in existing:
                session.add(join_cls(**{bindings.user: user, bindings.role: role}))
                session.commit()
                self.logger.debug("Added role %s to %s", role_name, username)
            elif not new_roles.get(role_name) and role_name in existing:
                stmt = (
                    select(join_cls)
                    .join(getattr(join_cls, bindings.user))
                    .join(getattr(join_cls, bindings.role))
                    .where(
                        self._column(user_cls, cfg.users_username_column) == username,
                        getattr(role_cls, role_key) == role_name,
                    )
                )
                for link in session.scalars(stmt).all():
                    session.delete(link)
                session.commit()
                self.logger.debug("Removed role %s from %s", role_name, username)

        for role_name in sorted(set(new_roles) - known):
            self.logger.debug("Ignoring unknown role %s for %s", role_name, username)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def get_user_roles(self, username: str) -> Optional[list[str]]:
        """Return the user's role names in database order.

        None means the user does not exist (or roles are disabled); a user
        with no roles gets an empty list.
        """
        bindings = self.bindings
        if bindings is None:
            return None
        user_cls = self.resultset(ResultsetKind.USER)
        role_cls = self.resultset(ResultsetKind.ROLE)
        join_cls = self.resultset(ResultsetKind.USER_ROLE)
        role_key = self._attribute_key(role_cls, self.config.roles_role_column)

        prefetch = selectinload(getattr(user_cls, bindings.user_user_roles)).selectinload(
            getattr(join_cls, bindings.role)
        )
        with self.schema.session() as session:
            user = self._find_user(session, USERNAME_KEY, username, prefetch)
            if user is None:
                self.logger.debug("No such user %s when looking for roles", username)
                return None
            return [getattr(getattr(link, bindings.role), role_key) for link in getattr(user, bindings.user_user_roles)]

    def user_has_role(self, username: str, role: str) -> bool:
        return role in (self.get_user_roles(username) or [])


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_dict(row) -> dict[str, Any]:
    # Keyed by column name, which is what the realm options refer to.
    return {prop.columns[0].name: getattr(row, prop.key) for prop in inspect(type(row)).column_attrs}
