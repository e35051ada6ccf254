import uuid

import pytest

from hypemarket.config import settings
from hypemarket.core.exceptions import (
    BadRequestException,
    ForbiddenException,
    NotFoundException,
    UnauthenticatedException,
)
from hypemarket.core.guards import (
    GuardContext,
    active_account,
    authorize,
    batch_ownership,
    check_batch_ownership,
    check_ownership,
    require_buyer,
    require_hype_mode,
    require_seller,
    run_guards,
)
from hypemarket.core.permissions import ROLE_TIERS, Role, UserType, has_min_tier, role_tier
from hypemarket.core.security import AuthContext
from hypemarket.models.marketplace import Listing
from tests.factories import auth_for, make_listing, make_user


def test_role_tiers_are_read_only():
    with pytest.raises(TypeError):
        ROLE_TIERS[Role.USER] = 10
    assert role_tier(Role.ADMIN) == 4
    assert role_tier("seller") == role_tier(Role.BUYER) == 2
    assert role_tier("nobody") == 0


def test_min_tier_comparison():
    assert has_min_tier(Role.ADMIN, [Role.SUBADMIN])
    assert has_min_tier(Role.SELLER, [Role.BUYER, Role.ADMIN])
    assert not has_min_tier(Role.USER, [Role.BUYER])
    assert not has_min_tier(Role.ADMIN, [])


async def test_authorize_requires_identity(db):
    ctx = GuardContext(auth=AuthContext.anonymous(), db=db)
    with pytest.raises(UnauthenticatedException):
        await run_guards(ctx, [authorize(Role.BUYER)])


async def test_authorize_by_tier(db, seller, buyer):
    guard = authorize(Role.SUBADMIN)
    with pytest.raises(ForbiddenException):
        await guard(GuardContext(auth=auth_for(seller), db=db))

    admin_ctx = GuardContext(auth=AuthContext(id=uuid.uuid4(), role=Role.ADMIN), db=db)
    assert await guard(admin_ctx) is admin_ctx


async def test_check_ownership_attaches_resource(db, seller, listing):
    ctx = GuardContext(auth=auth_for(seller), db=db, params={"id": str(listing.id)})

    result = await run_guards(ctx, [check_ownership("listing")])

    assert result.resource.id == listing.id
    assert result.resource_type == "listing"
    # Guards return a new context instead of mutating the one they were given
    assert ctx.resource is None


async def test_check_ownership_rejects_non_owner_without_mutation(db, buyer, listing):
    ctx = GuardContext(auth=auth_for(buyer), db=db, params={"id": str(listing.id)})

    with pytest.raises(ForbiddenException):
        await run_guards(ctx, [check_ownership("listing")])

    refreshed = await db.get(Listing, listing.id, populate_existing=True)
    assert refreshed.title == listing.title
    assert refreshed.status == listing.status


async def test_check_ownership_admin_passes(db, admin, listing):
    ctx = GuardContext(auth=auth_for(admin), db=db, params={"id": str(listing.id)})
    result = await check_ownership("listing")(ctx)
    assert result.resource.id == listing.id


@pytest.mark.parametrize("raw_id,error", [(None, BadRequestException), ("not-a-uuid", BadRequestException)])
async def test_check_ownership_bad_ids(db, seller, raw_id, error):
    ctx = GuardContext(auth=auth_for(seller), db=db, params={"id": raw_id})
    with pytest.raises(error):
        await check_ownership("listing")(ctx)


async def test_check_ownership_missing_resource(db, seller):
    ctx = GuardContext(auth=auth_for(seller), db=db, params={"id": str(uuid.uuid4())})
    with pytest.raises(NotFoundException):
        await check_ownership("listing")(ctx)


async def test_check_ownership_with_callable_id_source(db, seller, listing):
    guard = check_ownership("listing", id_source=lambda ctx: ctx.params["nested"]["listing"])
    ctx = GuardContext(auth=auth_for(seller), db=db, params={"nested": {"listing": str(listing.id)}})
    assert (await guard(ctx)).resource.id == listing.id


async def test_batch_ownership_reports_every_failure(db, seller, buyer):
    mine = await make_listing(db, seller)
    theirs = await make_listing(db, buyer)
    missing = uuid.uuid4()

    with pytest.raises(ForbiddenException) as exc:
        await check_batch_ownership(db, "listing", [str(mine.id), str(theirs.id), str(missing)], seller.id)

    assert set(exc.value.detail["not_owned"]) == {str(theirs.id), str(missing)}


async def test_batch_ownership_rejects_malformed_ids_together(db, seller):
    with pytest.raises(BadRequestException) as exc:
        await check_batch_ownership(db, "listing", ["bad", str(uuid.uuid4()), "worse"], seller.id)
    assert exc.value.detail["invalid_ids"] == ["bad", "worse"]


async def test_batch_ownership_requires_ids(db, seller):
    with pytest.raises(BadRequestException):
        await check_batch_ownership(db, "listing", [], seller.id)


async def test_batch_ownership_guard_reads_params(db, seller):
    first = await make_listing(db, seller)
    second = await make_listing(db, seller)
    ctx = GuardContext(auth=auth_for(seller), db=db, params={"ids": [str(first.id), str(second.id)]})

    result = await batch_ownership("listing")(ctx)

    assert [listing.id for listing in result.resource] == [first.id, second.id]


async def test_capability_trusts_token_role(db):
    # No such user in the store: the token role alone is enough
    ctx = GuardContext(auth=AuthContext(id=uuid.uuid4(), role=Role.SELLER), db=db)
    assert await require_seller(ctx) is ctx


async def test_capability_falls_back_to_store(db):
    both = await make_user(db, role=Role.USER, user_type=UserType.BOTH)
    ctx = GuardContext(auth=auth_for(both), db=db)

    result = await require_seller(ctx)
    assert result.identity.id == both.id
    assert (await require_buyer(ctx)).identity.id == both.id


async def test_capability_denied_by_store(db, buyer):
    with pytest.raises(ForbiddenException):
        await require_seller(GuardContext(auth=auth_for(buyer), db=db))


async def test_capability_unknown_identity(db):
    ctx = GuardContext(auth=AuthContext(id=uuid.uuid4(), role=Role.USER), db=db)
    with pytest.raises(NotFoundException):
        await require_buyer(ctx)


async def test_deactivated_account_is_refused(db):
    user = await make_user(db, role=Role.USER, user_type=UserType.SELLER, is_active=False)
    with pytest.raises(ForbiddenException) as exc:
        await require_seller(GuardContext(auth=auth_for(user), db=db))
    assert exc.value.detail == "Account deactivated"


async def test_strict_mode_consults_store_even_for_trusted_roles(db, monkeypatch):
    user = await make_user(db, role=Role.SELLER, user_type=UserType.SELLER, is_active=False)
    ctx = GuardContext(auth=auth_for(user), db=db)
    assert await require_seller(ctx) is ctx

    monkeypatch.setattr(settings, "STRICT_ACTIVE_CHECK", True)
    with pytest.raises(ForbiddenException):
        await require_seller(ctx)


async def test_hype_mode(db):
    member = await make_user(db, is_hype_mode=True)
    regular = await make_user(db)

    assert (await require_hype_mode(GuardContext(auth=auth_for(member), db=db))).identity.id == member.id
    with pytest.raises(ForbiddenException):
        await require_hype_mode(GuardContext(auth=auth_for(regular), db=db))


async def test_active_account_follows_strict_mode(db, seller, monkeypatch):
    ctx = GuardContext(auth=auth_for(seller), db=db)
    assert await active_account(ctx) is ctx

    monkeypatch.setattr(settings, "STRICT_ACTIVE_CHECK", True)
    assert (await active_account(ctx)).identity.id == seller.id

    seller.is_active = False
    await db.commit()
    with pytest.raises(ForbiddenException) as exc:
        await active_account(ctx)
    assert exc.value.detail == "Account deactivated"


async def test_active_account_requires_identity(db):
    with pytest.raises(UnauthenticatedException):
        await active_account(GuardContext(auth=AuthContext.anonymous(), db=db))
