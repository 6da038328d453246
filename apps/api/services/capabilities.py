"""Role to capability mapping consulted by every command endpoint."""

from __future__ import annotations

from typing import Dict, FrozenSet


SPEND_CREDITS = "credits:spend"
VIEW_CREDITS = "credits:view"
MANAGE_SUBSCRIPTION = "subscriptions:manage"
PURCHASE_CREDITS = "topups:purchase"
ADMIN_WALLETS = "wallet:admin"
ADMIN_PRICING = "pricing:admin"
RUN_ROLLOVER = "billing:rollover"
CONFIRM_PAYMENTS = "payments:confirm"

_MEMBER: FrozenSet[str] = frozenset({SPEND_CREDITS, VIEW_CREDITS, MANAGE_SUBSCRIPTION, PURCHASE_CREDITS})

ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "viewer": frozenset({VIEW_CREDITS}),
    "user": _MEMBER,
    "admin": _MEMBER | {ADMIN_WALLETS, CONFIRM_PAYMENTS},
    "superadmin": _MEMBER | {ADMIN_WALLETS, ADMIN_PRICING, RUN_ROLLOVER, CONFIRM_PAYMENTS},
    # Service identity used by the payment processor bridge.
    "payments": frozenset({CONFIRM_PAYMENTS}),
}


def has_capability(role: str, capability: str) -> bool:
    return capability in ROLE_CAPABILITIES.get(role or "", frozenset())
