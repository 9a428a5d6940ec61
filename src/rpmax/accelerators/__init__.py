"""
Module: rpmax.accelerators
--------------------------
Base fixed-point accelerators for the stable part of the solution.

Submodules
----------
- `fixed_point`:
    Accelerator protocol, plain fixed-point iteration and inverse
    least-squares quasi-Newton mixing
"""

from .fixed_point import FixedPointAccelerator, InverseLeastSquares, PlainFixedPoint

__all__: list[str] = [
    "FixedPointAccelerator",
    "InverseLeastSquares",
    "PlainFixedPoint",
]
