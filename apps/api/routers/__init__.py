"""Routers package."""

from . import (
    health,
    generation,
    billing,
)
