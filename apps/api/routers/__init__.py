"""Routers package."""

from . import (
    health,
    mutations,
    outcomes,
    genome,
    regrets,
    alerts,
)
