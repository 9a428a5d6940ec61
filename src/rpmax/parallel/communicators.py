"""
Module: rpmax.parallel.communicators
------------------------------------

Collective reductions over domain-decomposed solution vectors.

A flattened solution of `npt * nvar` entries is split into the locally
owned leading `npt_domain * nvar` entries and trailing halo entries owned
by neighbouring processes. Global inner products sum the owned entries
only and then combine the partial sums across the process group, so every
process takes the same decisions.

Classes
-------
- `Communicator`:
    Protocol for the collective operations used by rpmax
- `SerialCommunicator`:
    Single-process communicator, reductions are the identity
- `MPICommunicator`:
    Adapter for an mpi4py-style communicator object

Functions
---------
- `owned_slice`:
    Slice selecting the owned entries of a flattened solution
- `global_dot`:
    Inner product of two flattened solutions
- `global_norm`:
    L2 norm of a flattened solution
- `global_matvec`:
    Inner products of every row of a matrix with a flattened solution
"""

import jax.numpy as jnp
import numpy as np
from beartype.typing import Any, List, Optional, Protocol, runtime_checkable
from jaxtyping import Array, Float


@runtime_checkable
class Communicator(Protocol):
    """Collective operations required for distributed subspace updates."""

    @property
    def size(self) -> int: ...

    @property
    def rank(self) -> int: ...

    def allreduce_sum(self, value: Array) -> Array: ...

    def allgather(self, value: Array) -> List[Array]: ...


class SerialCommunicator:
    """Communicator for a single process."""

    @property
    def size(self) -> int:
        return 1

    @property
    def rank(self) -> int:
        return 0

    def allreduce_sum(self, value: Array) -> Array:
        return value

    def allgather(self, value: Array) -> List[Array]:
        return [value]


class MPICommunicator:
    """
    Description
    -----------
    Adapter around an mpi4py-style communicator.

    The wrapped object needs `allreduce`, `allgather`, `Get_size` and
    `Get_rank`, as provided by `mpi4py.MPI.Comm`. Arrays are moved to
    host memory before communication and back to JAX afterwards.

    Parameters
    ----------
    - `comm` (Any):
        The communicator to wrap.
    """

    def __init__(self, comm: Any):
        self.comm = comm

    @property
    def size(self) -> int:
        return int(self.comm.Get_size())

    @property
    def rank(self) -> int:
        return int(self.comm.Get_rank())

    def allreduce_sum(self, value: Array) -> Array:
        reduced = self.comm.allreduce(np.asarray(value))
        return jnp.asarray(reduced, dtype=value.dtype)

    def allgather(self, value: Array) -> List[Array]:
        gathered = self.comm.allgather(np.asarray(value))
        return [jnp.asarray(part, dtype=value.dtype) for part in gathered]


def owned_slice(
    owned_size: Optional[int],
) -> slice:
    """Slice of the owned entries; None selects everything."""
    return slice(0, owned_size)


def global_dot(
    vector_a: Float[Array, " n"],
    vector_b: Float[Array, " n"],
    owned: slice,
    communicator: Communicator,
) -> Float[Array, ""]:
    """
    Description
    -----------
    Inner product of two flattened solutions across all processes.

    Parameters
    ----------
    - `vector_a` (Float[Array, " n"]):
        First operand, including halo entries.
    - `vector_b` (Float[Array, " n"]):
        Second operand, including halo entries.
    - `owned` (slice):
        Owned entries, see `owned_slice`.
    - `communicator` (Communicator):
        Process group.

    Returns
    -------
    - `result` (Float[Array, ""]):
        Sum over the owned entries of every process.
    """
    local: Float[Array, ""] = jnp.dot(vector_a[owned], vector_b[owned])
    return communicator.allreduce_sum(local)


def global_norm(
    vector: Float[Array, " n"],
    owned: slice,
    communicator: Communicator,
) -> Float[Array, ""]:
    return jnp.sqrt(global_dot(vector, vector, owned, communicator))


def global_matvec(
    matrix: Float[Array, "k n"],
    vector: Float[Array, " n"],
    owned: slice,
    communicator: Communicator,
) -> Float[Array, " k"]:
    """
    Description
    -----------
    Inner products of every row of `matrix` with `vector`, i.e. the
    matrix-vector product with the row space, reduced across processes.

    Parameters
    ----------
    - `matrix` (Float[Array, "k n"]):
        One flattened solution per row.
    - `vector` (Float[Array, " n"]):
        Flattened solution.
    - `owned` (slice):
        Owned entries.
    - `communicator` (Communicator):
        Process group.

    Returns
    -------
    - `result` (Float[Array, " k"]):
        Global inner products, one per row.
    """
    local: Float[Array, " k"] = matrix[:, owned] @ vector[owned]
    return communicator.allreduce_sum(local)
