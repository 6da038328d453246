"""Error taxonomy for the credit ledger and pricing engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class CreditError(Exception):
    """Base class; carries the HTTP status and a stable machine code."""

    status_code = 400
    code = "credit_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.code}


class UnknownAction(CreditError):
    status_code = 404
    code = "unknown_action"

    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"No pricing rule configured for action '{action_type}'.")


class InsufficientBalance(CreditError):
    status_code = 402
    code = "insufficient_balance"

    def __init__(self, required: int, available: int, locked: bool = False):
        self.required = required
        self.available = available
        self.locked = locked
        if locked:
            message = "Wallet is locked. Spending is suspended for this account."
        else:
            message = (
                f"Insufficient credits. Required: {required}, available: {available}. "
                "Top up credits to continue."
            )
        super().__init__(message)

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update(
            {
                "credits_required": self.required,
                "current_balance": self.available,
                "wallet_locked": self.locked,
            }
        )
        return payload


class InvalidQuantity(CreditError):
    status_code = 422
    code = "invalid_quantity"

    def __init__(self, value: Any, field: str = "quantity"):
        self.value = value
        super().__init__(f"{field} must be a positive integer, got {value!r}.")


class InvalidPricingRule(CreditError):
    status_code = 422
    code = "invalid_pricing_rule"


class WalletArchived(CreditError):
    status_code = 409
    code = "wallet_archived"

    def __init__(self, user_id: str):
        super().__init__(f"Wallet for account '{user_id}' is archived.")


class WalletNotFound(CreditError):
    status_code = 404
    code = "wallet_not_found"

    def __init__(self, user_id: str):
        super().__init__(f"No wallet provisioned for account '{user_id}'.")


class SubscriptionStateConflict(CreditError):
    status_code = 409
    code = "subscription_state_conflict"


class UnknownTopupPackage(CreditError):
    status_code = 404
    code = "unknown_topup_package"

    def __init__(self, package_type: str):
        super().__init__(f"Unknown top-up package '{package_type}'.")


class DuplicatePurchaseConfirmation(CreditError):
    """Replay of an already-applied purchase; callers treat it as success."""

    status_code = 200
    code = "duplicate_purchase_confirmation"

    def __init__(self, external_reference: str, original_result: Optional[Dict[str, Any]] = None):
        self.external_reference = external_reference
        self.original_result = original_result or {}
        super().__init__(f"Purchase '{external_reference}' was already applied.")


class RolloverAlreadyApplied(CreditError):
    """Duplicate cycle-rollover trigger; callers ignore it."""

    status_code = 200
    code = "rollover_already_applied"

    def __init__(self, user_id: str, period_end: Any):
        self.user_id = user_id
        self.period_end = period_end
        super().__init__(f"Cycle ending {period_end} for account '{user_id}' is still current.")


class PurchaseReferenceConflict(CreditError):
    status_code = 409
    code = "purchase_reference_conflict"

    def __init__(self, external_reference: str):
        super().__init__(f"Purchase reference '{external_reference}' belongs to a different account.")


def require_positive_int(value: Any, field: str = "quantity") -> int:
    """Reject anything but a strictly positive int; never coerce."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidQuantity(value, field)
    return value
