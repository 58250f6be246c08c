"""Routers package."""

from . import (
    health,
    auth,
    billing,
    tech_pack,
)
