"""Routers package."""

from . import (
    health,
    jobs,
    webhooks,
    cron,
    billing,
)
