"""Per-principal state management."""

from .manager import PrincipalRegistry, PrincipalState

__all__ = ["PrincipalRegistry", "PrincipalState"]
