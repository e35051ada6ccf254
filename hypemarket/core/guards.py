"""
Composable request guards.

Every guard has the same shape, ``async guard(ctx) -> ctx``: it either returns
a (possibly enriched) copy of the context or raises. Routes list the guards
they need and ``run_guards`` applies them in order, so the composition can be
exercised without an HTTP request.
"""
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Sequence, Union
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from hypemarket.config import settings
from hypemarket.core.exceptions import (
    BadRequestException,
    ForbiddenException,
    NotFoundException,
    UnauthenticatedException,
)
from hypemarket.core.permissions import Role, can_buy, can_sell, has_min_tier, is_admin
from hypemarket.core.security import AuthContext
from hypemarket.models.ledger import WithdrawalRequest
from hypemarket.models.marketplace import Listing, Offer
from hypemarket.models.order import Order
from hypemarket.models.user import User
from hypemarket.services.identity_service import IdentityService
from hypemarket.utils.validators import parse_identifier, split_identifiers


@dataclass(frozen=True)
class GuardContext:
    auth: AuthContext
    db: AsyncSession
    params: Mapping[str, Any] = field(default_factory=dict)
    resource: Any = None
    resource_type: Optional[str] = None
    identity: Optional[User] = None

    def evolve(self, **changes) -> "GuardContext":
        return replace(self, **changes)


Guard = Callable[[GuardContext], Awaitable[GuardContext]]

RESOURCE_MODELS = MappingProxyType({
    "listing": Listing,
    "offer": Offer,
    "order": Order,
    "withdrawal": WithdrawalRequest,
})


async def run_guards(ctx: GuardContext, guards: Sequence[Guard]) -> GuardContext:
    for guard in guards:
        ctx = await guard(ctx)
    return ctx


def _model_for(resource_type: str):
    try:
        return RESOURCE_MODELS[resource_type]
    except KeyError:
        raise ValueError(f"Unknown resource type: {resource_type}")


def _require_identity(ctx: GuardContext) -> None:
    if ctx.auth is None or ctx.auth.is_anonymous:
        raise UnauthenticatedException("Authentication required")


async def authenticated(ctx: GuardContext) -> GuardContext:
    _require_identity(ctx)
    return ctx


def authorize(*allowed_roles: Union[Role, str]) -> Guard:
    """Pass when the caller's tier reaches the lowest tier among ``allowed_roles``."""
    allowed = tuple(Role(r) for r in allowed_roles)

    async def guard(ctx: GuardContext) -> GuardContext:
        _require_identity(ctx)
        if not has_min_tier(ctx.auth.role, allowed):
            raise ForbiddenException("Insufficient permissions")
        return ctx

    guard.__name__ = f"authorize_{'_'.join(r.value for r in allowed)}"
    return guard


def check_ownership(
    resource_type: str,
    owner_field: str = "owner_id",
    id_source: Union[str, Callable[[GuardContext], Any]] = "id",
) -> Guard:
    """Load a resource and require the caller to own it (admins always pass).

    ``id_source`` is either a key into ``ctx.params`` or a callable returning the id.
    The loaded resource is handed on in the returned context.
    """
    model = _model_for(resource_type)
    id_name = id_source if isinstance(id_source, str) else f"{resource_type}_id"

    async def guard(ctx: GuardContext) -> GuardContext:
        _require_identity(ctx)
        raw_id = id_source(ctx) if callable(id_source) else ctx.params.get(id_source)
        resource_id = parse_identifier(raw_id, id_name)

        resource = await ctx.db.get(model, resource_id)
        if resource is None:
            raise NotFoundException(resource_type.capitalize(), str(resource_id))

        if getattr(resource, owner_field) != ctx.auth.id and not is_admin(ctx.auth.role):
            raise ForbiddenException("Access denied. You do not own this resource.")

        return ctx.evolve(resource=resource, resource_type=resource_type)

    guard.__name__ = f"check_{resource_type}_ownership"
    return guard


async def check_batch_ownership(
    db: AsyncSession,
    resource_type: str,
    ids: Iterable,
    owner_id: UUID,
    owner_field: str = "owner_id",
) -> List[Any]:
    """Require ``owner_id`` to own every id; reports the complete set that fails.

    Ids that do not resolve count as not owned.
    """
    model = _model_for(resource_type)
    if not isinstance(ids, (list, tuple, set)) or len(ids) == 0:
        raise BadRequestException("Resource IDs array required")

    valid, invalid = split_identifiers(ids)
    if invalid:
        raise BadRequestException({"message": "Invalid IDs", "invalid_ids": invalid})

    unique_ids = list(dict.fromkeys(valid))
    result = await db.execute(select(model).where(model.id.in_(unique_ids)))
    found = {resource.id: resource for resource in result.scalars().all()}

    not_owned = [
        str(resource_id)
        for resource_id in unique_ids
        if resource_id not in found or getattr(found[resource_id], owner_field) != owner_id
    ]
    if not_owned:
        raise ForbiddenException({
            "message": "You do not own the following resources",
            "not_owned": not_owned,
        })
    return [found[resource_id] for resource_id in unique_ids]


def batch_ownership(resource_type: str, owner_field: str = "owner_id", ids_key: str = "ids") -> Guard:
    async def guard(ctx: GuardContext) -> GuardContext:
        _require_identity(ctx)
        resources = await check_batch_ownership(
            ctx.db, resource_type, ctx.params.get(ids_key), ctx.auth.id, owner_field
        )
        return ctx.evolve(resource=resources, resource_type=resource_type)

    guard.__name__ = f"check_{resource_type}_batch_ownership"
    return guard


async def _load_identity(ctx: GuardContext) -> User:
    user = ctx.identity or await IdentityService.find_by_id(ctx.db, ctx.auth.id)
    if user is None:
        raise NotFoundException("User", str(ctx.auth.id))
    if not user.is_active:
        raise ForbiddenException("Account deactivated")
    return user


async def active_account(ctx: GuardContext) -> GuardContext:
    """Refuse deactivated accounts.

    Follows the same trust policy as the capability guards: the token is taken at
    its word unless STRICT_ACTIVE_CHECK is on.
    """
    _require_identity(ctx)
    if not settings.STRICT_ACTIVE_CHECK:
        return ctx
    return ctx.evolve(identity=await _load_identity(ctx))


def _capability(name: str, trusted_roles, check: Callable[[User], bool], message: str) -> Guard:
    """Trust the token role when it already grants the capability, else consult the store.

    The token path can be stale by up to the token lifetime; STRICT_ACTIVE_CHECK
    forces the store lookup for every call.
    """
    async def guard(ctx: GuardContext) -> GuardContext:
        _require_identity(ctx)
        if ctx.auth.role in trusted_roles and not settings.STRICT_ACTIVE_CHECK:
            return ctx

        user = await _load_identity(ctx)
        if not check(user):
            raise ForbiddenException(message)
        return ctx.evolve(identity=user)

    guard.__name__ = name
    return guard


require_seller = _capability(
    "require_seller",
    (Role.SELLER, Role.ADMIN),
    lambda user: can_sell(user.role, user.user_type),
    "Seller account required",
)

require_buyer = _capability(
    "require_buyer",
    (Role.BUYER, Role.ADMIN),
    lambda user: can_buy(user.role, user.user_type),
    "Buyer account required to make purchases",
)

require_hype_mode = _capability(
    "require_hype_mode",
    (Role.ADMIN,),
    lambda user: bool(user.is_hype_mode) or is_admin(user.role),
    "HypeMode subscription required for marketplace features",
)
