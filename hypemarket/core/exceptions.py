from typing import Any, Dict, Optional
from fastapi import HTTPException, status


class MarketplaceException(HTTPException):
    def __init__(self, status_code: int, detail: Any, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class UnauthenticatedException(MarketplaceException):
    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class InvalidCredentialException(MarketplaceException):
    def __init__(self, detail: str = "Invalid authentication credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenException(MarketplaceException):
    def __init__(self, detail: Any = "Forbidden"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail
        )


class NotFoundException(MarketplaceException):
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} with id {identifier} not found"
        )


class BadRequestException(MarketplaceException):
    def __init__(self, detail: Any):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=detail
        )


class ConflictException(MarketplaceException):
    def __init__(self, detail: Any):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=detail
        )


class ReconciliationRequired(ConflictException):
    """A ledger reversal would drive a seller balance negative."""

    def __init__(self, seller_id, amount: int, reason: str):
        self.seller_id = seller_id
        self.amount = amount
        self.reason = reason
        super().__init__({
            "message": "Ledger reversal requires manual reconciliation",
            "seller_id": str(seller_id),
            "amount": amount,
            "reason": reason,
        })


class ExternalFailureException(MarketplaceException):
    def __init__(self, service: str, detail: str):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"{service} error: {detail}"
        )
