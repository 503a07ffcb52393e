"""
auth/exceptions.py -- Error hierarchy for the credential store.

Not-found conditions are not errors: lookups return None (or False for
authenticate) and log at DEBUG. These exceptions are for configuration
mistakes and caller errors that must stop the operation.
"""


class CredentialStoreError(Exception):
    """Base class for every error raised by the credential store."""


class ConfigurationError(CredentialStoreError):
    """Realm configuration does not fit the schema or is inconsistent."""


class RelationshipDiscoveryError(ConfigurationError):
    """The users/roles join relationships could not be resolved unambiguously."""


class MissingUsernameError(CredentialStoreError, ValueError):
    """create_user / update_user was called without a username."""
