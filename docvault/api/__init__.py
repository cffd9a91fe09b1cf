"""HTTP surface for the docvault control plane."""

from .server import app  # noqa: F401
