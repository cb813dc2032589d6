"""vps-fleet-manager package."""

__all__ = [
    "authz",
    "cli",
    "config",
    "constants",
    "coordinator",
    "credentials",
    "exceptions",
    "hypervisor",
    "inventory",
    "models",
    "sessions",
    "storage",
    "utils",
]
