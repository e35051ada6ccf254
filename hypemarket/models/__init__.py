from hypemarket.models.user import User
from hypemarket.models.marketplace import Listing, Offer
from hypemarket.models.order import Order, OrderDelivery, StatusTransition
from hypemarket.models.ledger import LedgerAccount, LedgerEntry, WithdrawalRequest, ReconciliationIssue
from hypemarket.models.notification import Notification

__all__ = [
    "User",
    "Listing",
    "Offer",
    "Order",
    "OrderDelivery",
    "StatusTransition",
    "LedgerAccount",
    "LedgerEntry",
    "WithdrawalRequest",
    "ReconciliationIssue",
    "Notification",
]
