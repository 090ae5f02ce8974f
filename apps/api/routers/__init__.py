"""Routers package."""

from . import (
    health,
    session,
    placements,
    billing,
)
