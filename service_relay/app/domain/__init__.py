"""
Domain package for the relay.

Holds the tenant registry and credential checks, request payload models,
and the moderation command handlers that feed the action queue and the
command log.
"""

from .moderation import ModerationService
from .tenants import Tenant, TenantRegistry, TenantResolver

__all__ = ["ModerationService", "Tenant", "TenantRegistry", "TenantResolver"]
