from enum import Enum
from types import MappingProxyType
from typing import Iterable


class Role(str, Enum):
    USER = "user"
    BUYER = "buyer"
    SELLER = "seller"
    SUBADMIN = "subadmin"
    ADMIN = "admin"


class UserType(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    BOTH = "both"


# Read-only: roles on the same tier (buyer/seller) are peers, not a hierarchy.
ROLE_TIERS = MappingProxyType({
    Role.USER: 1,
    Role.BUYER: 2,
    Role.SELLER: 2,
    Role.SUBADMIN: 3,
    Role.ADMIN: 4,
})


def role_tier(role) -> int:
    """Tier of a role given as a Role or its string value.

    Values outside Role rank 0. Tokens never reach this with one: the auth
    resolver reads an unknown token role as Role.USER.
    """
    if role is None:
        return 0
    try:
        return ROLE_TIERS[Role(role)]
    except ValueError:
        return 0


def has_min_tier(role, allowed: Iterable) -> bool:
    tiers = [role_tier(r) for r in allowed]
    if not tiers:
        return False
    return role_tier(role) >= min(tiers)


def is_admin(role) -> bool:
    return role == Role.ADMIN or role == Role.ADMIN.value


def can_sell(role, user_type) -> bool:
    return (
        user_type in (UserType.SELLER, UserType.BOTH)
        or role in (Role.SELLER, Role.ADMIN)
    )


def can_buy(role, user_type) -> bool:
    return (
        user_type in (UserType.BUYER, UserType.BOTH)
        or role in (Role.BUYER, Role.ADMIN)
    )
