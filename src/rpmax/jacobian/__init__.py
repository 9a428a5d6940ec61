"""
Jacobian access for fixed-point maps.

Submodules
----------
- `operators`:
    VJP primitives and flattening of shaped maps
- `oracle`:
    Seed/propagate/read-back adjoint oracle used by the Jacobian projector
"""

from .operators import (
    flatten_map,
    value_and_vjp_operator,
    vjp_operator,
)

from .oracle import AdjointOracle

__all__ = [
    "flatten_map",
    "vjp_operator",
    "value_and_vjp_operator",
    "AdjointOracle",
]
