"""Routers package."""

from . import (
    health,
    auth,
    generations,
    feed,
    billing,
)
