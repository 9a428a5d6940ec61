"""
Module: rpmax
-------------
Recursive projection acceleration of fixed-point iterations with JAX.

A fixed-point iteration u = G(u) is split into a low-dimensional
subspace of slow or unstable modes, detected online from the iterate
history and corrected by Newton steps with a reduced Jacobian from
reverse-mode autodiff, and its stable complement, left to a base
fixed-point accelerator.

Submodules
----------
- `subspace`:
    History window, basis builder, Jacobian projector and the
    `NewtonUpdateOnSubspace` driver
- `jacobian`:
    VJP operators and the adjoint differentiation oracle
- `accelerators`:
    Base fixed-point accelerators for the stable part
- `parallel`:
    Communicators and global reductions over owned entries
"""

from .subspace import NewtonUpdateOnSubspace, make_subspace_config
from .accelerators import InverseLeastSquares, PlainFixedPoint
from .jacobian import AdjointOracle, flatten_map
from .parallel import MPICommunicator, SerialCommunicator

__all__: list[str] = [
    "NewtonUpdateOnSubspace",
    "make_subspace_config",
    "InverseLeastSquares",
    "PlainFixedPoint",
    "AdjointOracle",
    "flatten_map",
    "MPICommunicator",
    "SerialCommunicator",
]
