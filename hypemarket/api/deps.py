from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from hypemarket.database import get_db
from hypemarket.core.exceptions import UnauthenticatedException
from hypemarket.core.guards import Guard, GuardContext, run_guards
from hypemarket.core.security import AuthContext, resolve_auth_context, resolve_optional_auth_context
from hypemarket.integrations.payment_gateway import PaymentGateway
from hypemarket.integrations.stripe_client import stripe_gateway
from hypemarket.services.notification_service import Notifier, notification_service

security = HTTPBearer(auto_error=False)


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    if credentials is None:
        raise UnauthenticatedException("Authentication required")
    return resolve_auth_context(credentials.credentials)


async def get_optional_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    return resolve_optional_auth_context(credentials.credentials if credentials else None)


def get_gateway() -> PaymentGateway:
    return stripe_gateway


def get_notifier() -> Notifier:
    return notification_service


def guarded(*guards: Guard):
    """Route dependency running ``guards`` in order over the request's path and query params."""

    async def dependency(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
        db: AsyncSession = Depends(get_db),
    ) -> GuardContext:
        params = {**request.query_params, **request.path_params}
        ctx = GuardContext(auth=auth, db=db, params=params)
        return await run_guards(ctx, guards)

    return dependency
