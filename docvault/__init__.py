"""Multi-tenant document vault control plane."""

from .config import DocVaultConfig  # noqa: F401
from .runtime import DocVaultRuntime  # noqa: F401
