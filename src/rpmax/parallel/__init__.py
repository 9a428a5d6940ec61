"""
Module: rpmax.parallel
----------------------
Collective reductions for domain-decomposed solutions.

Submodules
----------
- `communicators`:
    Communicator protocol, serial and MPI implementations, and global
    inner products restricted to the owned entries
"""

from .communicators import (
    Communicator,
    MPICommunicator,
    SerialCommunicator,
    global_dot,
    global_matvec,
    global_norm,
    owned_slice,
)

__all__: list[str] = [
    "Communicator",
    "MPICommunicator",
    "SerialCommunicator",
    "global_dot",
    "global_matvec",
    "global_norm",
    "owned_slice",
]
