"""
auth/models.py -- Plain data types shared by the store and the realm registry.

Pattern: Data class (pure data container, zero logic). The store does the work.

Layer rule: no imports from core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ResultsetKind(Enum):
    """The three logical tables a realm is configured against.

    The value is the option prefix: users -> users_source / users_resultset.
    """

    USER = "users"
    ROLE = "roles"
    USER_ROLE = "user_roles"


@dataclass(frozen=True)
class RelationshipBindings:
    """Relationship attribute names discovered on the mapped classes.

    user_user_roles -- on the user class, one-to-many to the join class
    role_user_roles -- on the role class, one-to-many to the join class
    user            -- on the join class, many-to-one back to the user
    role            -- on the join class, many-to-one back to the role
    """

    user_user_roles: str
    role_user_roles: str
    user: str
    role: str
