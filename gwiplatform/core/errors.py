from __future__ import annotations


class PlatformError(Exception):
    """Base error for gwiplatform."""


class AuditImmutableError(PlatformError):
    """Audit log rows are append-only; updates and deletes are refused."""


class HierarchyCycleError(PlatformError):
    """An organization parent chain loops back on itself or exceeds the depth bound."""


class InvalidRoleError(PlatformError, ValueError):
    """Role name outside the known vocabulary for its portal."""


class UpstreamUnavailableError(PlatformError):
    """The upstream analytics API could not be reached."""


class FeatureConfigError(PlatformError, ValueError):
    """Feature flag, plan feature or override values outside their allowed range."""


class OrganizationConfigError(PlatformError, ValueError):
    """Organization create/update values that cannot be applied (slug, plan tier, parent)."""


class RoleConfigError(PlatformError, ValueError):
    """Managed admin role definitions that are invalid, duplicated or still in use."""
