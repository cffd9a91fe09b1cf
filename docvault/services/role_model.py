"""Static role table: which resource-class/action pairs each role grants."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Union

from ..errors import InvalidInput
from ..models import Role


class Wildcard(str, Enum):
    ANY = "*"


class ResourceClass(str, Enum):
    ORG = "org"
    USERS = "users"
    BILLING = "billing"
    FILES = "files"
    SHARES = "shares"
    AUDIT = "audit"

    @classmethod
    def parse(cls, value: "ResourceClass | str") -> "ResourceClass":
        try:
            return value if isinstance(value, ResourceClass) else cls(str(value).strip().lower())
        except ValueError as exc:
            raise InvalidInput(f"Unknown resource class: {value!r}") from exc


class Action(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RESHARE = "reshare"

    @classmethod
    def parse(cls, value: "Action | str") -> "Action":
        try:
            return value if isinstance(value, Action) else cls(str(value).strip().lower())
        except ValueError as exc:
            raise InvalidInput(f"Unknown action: {value!r}") from exc


ANY = Wildcard.ANY


@dataclass(frozen=True)
class Permission:
    resource_class: Union[ResourceClass, Wildcard]
    action: Union[Action, Wildcard]

    def covers(self, resource_class: ResourceClass, action: Action) -> bool:
        if self.resource_class is not ANY and self.resource_class is not resource_class:
            return False
        return self.action is ANY or self.action is action

    def __str__(self) -> str:
        return f"{self.resource_class.value}:{self.action.value}"


def _perm(resource_class: Union[ResourceClass, Wildcard], action: Union[Action, Wildcard]) -> Permission:
    return Permission(resource_class, action)


_TABLE = {
    Role.OWNER: frozenset({_perm(ANY, ANY)}),
    Role.ADMIN: frozenset({
        _perm(ResourceClass.ORG, Action.READ),
        _perm(ResourceClass.ORG, Action.UPDATE),
        _perm(ResourceClass.USERS, ANY),
        _perm(ResourceClass.BILLING, ANY),
        _perm(ResourceClass.FILES, ANY),
        _perm(ResourceClass.SHARES, ANY),
        _perm(ResourceClass.AUDIT, Action.READ),
    }),
    Role.MANAGER: frozenset({
        _perm(ResourceClass.FILES, ANY),
        _perm(ResourceClass.SHARES, ANY),
        _perm(ResourceClass.USERS, Action.READ),
    }),
    Role.MEMBER: frozenset({
        _perm(ResourceClass.FILES, Action.READ),
        _perm(ResourceClass.FILES, Action.CREATE),
        _perm(ResourceClass.FILES, Action.UPDATE),
        _perm(ResourceClass.SHARES, Action.READ),
        _perm(ResourceClass.SHARES, Action.CREATE),
    }),
    Role.GUEST: frozenset({
        _perm(ResourceClass.FILES, Action.READ),
        _perm(ResourceClass.SHARES, Action.READ),
    }),
}

_RANKS = {
    Role.OWNER: 5,
    Role.ADMIN: 4,
    Role.MANAGER: 3,
    Role.MEMBER: 2,
    Role.GUEST: 1,
}


class RoleModel:
    """Read-only view over the role table; safe to share across threads."""

    def __init__(
        self,
        table: Mapping[Role, FrozenSet[Permission]],
        ranks: Mapping[Role, int],
    ) -> None:
        self._table = MappingProxyType(dict(table))
        self._ranks = MappingProxyType(dict(ranks))

    def permissions_for(self, role: Role | str) -> FrozenSet[Permission]:
        return self._table[Role.parse(role)]

    def rank_of(self, role: Role | str) -> int:
        return self._ranks[Role.parse(role)]

    def grants(self, role: Role | str, resource_class: ResourceClass, action: Action) -> bool:
        return any(permission.covers(resource_class, action) for permission in self.permissions_for(role))

    def roles(self) -> tuple[Role, ...]:
        return tuple(sorted(self._ranks, key=self._ranks.__getitem__, reverse=True))


ROLE_MODEL = RoleModel(_TABLE, _RANKS)
