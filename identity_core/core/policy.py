"""Role policy - priority ordering and admin checks.

The role priority order is shared by two decisions:

1. Federated role mapping: a user whose directory groups map to several
   roles gets the most privileged one (see map_groups_to_role).
2. Route gating: administrative routes accept ADMIN_ROLES only.

Priority (most privileged first):
  platform_admin > admin > it_operations > security_analyst
  > executive_viewer > user > viewer
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

import structlog

from identity_core.models.user import UserRole

log = structlog.get_logger(__name__)

ROLE_PRIORITY: tuple[UserRole, ...] = (
    UserRole.PLATFORM_ADMIN,
    UserRole.ADMIN,
    UserRole.IT_OPERATIONS,
    UserRole.SECURITY_ANALYST,
    UserRole.EXECUTIVE_VIEWER,
    UserRole.USER,
    UserRole.VIEWER,
)

ADMIN_ROLES: frozenset[UserRole] = frozenset({UserRole.PLATFORM_ADMIN, UserRole.ADMIN})

DEFAULT_ROLE = UserRole.USER


def is_valid_role(role: str) -> bool:
    return role in UserRole._value2member_map_


def role_rank(role: str) -> int:
    """Lower is more privileged; unknown roles sort last."""
    try:
        return ROLE_PRIORITY.index(UserRole(role))
    except ValueError:
        return len(ROLE_PRIORITY)


def most_privileged(roles: Iterable[str]) -> UserRole | None:
    known = [UserRole(r) for r in roles if is_valid_role(r)]
    if not known:
        return None
    return min(known, key=role_rank)


def map_groups_to_role(
    groups: Iterable[str],
    group_role_map: Mapping[str, str],
    default_role: str = DEFAULT_ROLE,
) -> str:
    """Map directory group names to a single platform role.

    Groups without a mapping are ignored. When several mapped roles apply the
    most privileged wins; when none apply, default_role is returned.
    """
    mapped = [group_role_map[g] for g in groups if g in group_role_map]
    winner = most_privileged(mapped)
    if winner is None:
        if mapped:
            log.warning("policy.unknown_mapped_roles", roles=sorted(set(mapped)))
        return default_role
    return winner.value
