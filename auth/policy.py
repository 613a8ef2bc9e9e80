"""
auth/policy.py -- Role and ownership based authorization.

PolicyEngine.authorize(identity, resource_owner_id, action) is a pure
function of its inputs and the role table it was built with. The role table
is parsed once from permissions.role_overrides into frozen RolePolicy
records.

Rules:
  - Unknown action: deny.
  - Roles missing from the table are ignored; no known role: deny.
  - Union over the identity's known roles. A role grants the action when its
    flag is True, or when the flag is unset and default_deny is off.
  - own_only gates a role's grant on identity.user_id == resource_owner_id.
    A resource_owner_id of None (nothing owns it yet, e.g. create) is not
    gated.
  - Scoped API keys: a non-empty scope set must contain the action or "*".
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional

from auth.models import Identity

ACTIONS = ("read", "create", "update", "delete", "publish")
_FLAGS = ACTIONS + ("own_only",)


@dataclass(frozen=True)
class RolePolicy:
    name: str
    read: Optional[bool] = None
    create: Optional[bool] = None
    update: Optional[bool] = None
    delete: Optional[bool] = None
    publish: Optional[bool] = None
    own_only: bool = False

    @classmethod
    def from_mapping(cls, name: str, flags: Mapping[str, bool]) -> "RolePolicy":
        unknown = set(flags) - set(_FLAGS)
        if unknown:
            raise ValueError(f"Role {name!r} has unknown permission flag(s): {', '.join(sorted(unknown))}")
        for flag, value in flags.items():
            if not isinstance(value, bool):
                raise ValueError(f"Role {name!r} flag {flag!r} must be a boolean")
        return cls(name=name, **flags)

    def flag(self, action: str) -> Optional[bool]:
        return getattr(self, action)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


class PolicyEngine:
    def __init__(self, role_overrides: Mapping[str, Mapping[str, bool]], default_deny: bool = False) -> None:
        self.default_deny = default_deny
        self.roles: dict[str, RolePolicy] = {
            name: RolePolicy.from_mapping(name, flags) for name, flags in role_overrides.items()
        }

    @classmethod
    def from_settings(cls, settings) -> "PolicyEngine":
        perms = settings.permissions
        return cls(perms.role_overrides, default_deny=perms.default_deny)

    def authorize(self, identity: Identity, resource_owner_id: Optional[int], action: str) -> Decision:
        if action not in ACTIONS:
            return Decision(False, f"unknown action {action!r}")

        policies = [self.roles[r] for r in identity.roles if r in self.roles]
        if not policies:
            return Decision(False, "no recognised role")

        if not identity.full_scope and action not in identity.scopes and "*" not in identity.scopes:
            return Decision(False, f"credential scope does not include {action!r}")

        owner_denied = False
        for policy in policies:
            flag = policy.flag(action)
            granted = flag if flag is not None else not self.default_deny
            if not granted:
                continue
            if policy.own_only and resource_owner_id is not None and resource_owner_id != identity.user_id:
                owner_denied = True
                continue
            return Decision(True, f"granted by role {policy.name!r}")

        if owner_denied:
            return Decision(False, f"{action!r} is limited to the resource owner")
        return Decision(False, f"no role grants {action!r}")
