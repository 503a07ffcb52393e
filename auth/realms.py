"""
auth/realms.py -- One CredentialStore per configured realm.

A realm is a named authentication scope with its own RealmConfig. Realms can
share a database (different tables or column names) or live on different ones;
RealmConfig.schema_name picks the Schema from the mapping the host passes in,
falling back to DEFAULT_SCHEMA.

When no realm is named, authenticate_user() tries every realm from highest
priority to lowest (configuration order breaks ties) and reports which realm
accepted the credentials.

Usage:
    registry = RealmRegistry(get_settings(), {"default": Schema(url, Base)})
    realm = registry.authenticate_user("dave", "beer")   # "users" or None
    registry.store(realm).get_user_roles("dave")
    registry.close()
"""

from __future__ import annotations

import logging
from typing import Optional

from auth.exceptions import ConfigurationError
from auth.passwords import PasswordHasher
from auth.store import CredentialStore
from core.config import Settings
from core.database import Schema

DEFAULT_SCHEMA = "default"


class RealmRegistry:
    """Builds and holds the credential stores for every configured realm."""

    def __init__(
        self,
        settings: Settings,
        schemas: dict[str, Schema],
        hasher: Optional[PasswordHasher] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.schemas = schemas
        self.logger = logger or logging.getLogger("realmauth.realms")
        hasher = hasher or PasswordHasher()

        self._stores: dict[str, CredentialStore] = {}
        for name, config in settings.realms.items():
            schema_name = config.schema_name or DEFAULT_SCHEMA
            schema = schemas.get(schema_name)
            if schema is None:
                raise ConfigurationError(f"Realm {name!r} refers to unknown schema {schema_name!r}")
            store = CredentialStore(
                schema,
                config,
                disable_roles=settings.disable_roles,
                hasher=hasher,
                logger=self.logger.getChild(name),
            )
            # Resolve role relationships now so a mapping that does not fit
            # fails at startup rather than on the first role lookup.
            roles = "disabled" if store.bindings is None else "enabled"
            self._stores[name] = store
            self.logger.info("Realm %s using schema %s (roles %s)", name, schema_name, roles)

    @property
    def realm_names(self) -> list[str]:
        """Realm names by priority, highest first. sorted() is stable, so ties keep config order."""
        return sorted(self._stores, key=lambda name: self._stores[name].config.priority, reverse=True)

    def store(self, realm: str) -> CredentialStore:
        """Return the store for `realm`. Raises KeyError for unknown realms."""
        try:
            return self._stores[realm]
        except KeyError:
            raise KeyError(f"Unknown realm {realm!r}") from None

    def _candidates(self, realm: Optional[str]) -> list[str]:
        return [realm] if realm is not None else self.realm_names

    def authenticate_user(self, username: str, password: str, realm: Optional[str] = None) -> Optional[str]:
        """Return the name of the realm that accepts the credentials, or None."""
        for name in self._candidates(realm):
            if self.store(name).authenticate(username, password, lastlogin=self.settings.record_lastlogin):
                self.logger.debug("User %s authenticated in realm %s", username, name)
                return name
        self.logger.debug("Authentication failed for %s", username)
        return None

    def user_has_role(self, username: str, role: str, realm: Optional[str] = None) -> bool:
        """Return True if the user holds `role` in the named realm (or any realm)."""
        return any(self.store(name).user_has_role(username, role) for name in self._candidates(realm))

    def close(self) -> None:
        for schema in set(self.schemas.values()):
            schema.close()
