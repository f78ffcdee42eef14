"""API routers."""

from . import admin
from . import health
from . import subscriptions
from . import webhooks

__all__ = ['admin', 'health', 'subscriptions', 'webhooks']
