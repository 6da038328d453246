"""Routers package."""

from . import (
    health,
    credits,
    subscriptions,
    topups,
    admin,
)
