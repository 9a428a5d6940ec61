"""
Module: rpmax.subspace.subspace_types
-------------------------------------
Data structures and type definitions for Newton updates on a subspace.

Type Aliases
------------
- `scalar_float`:
    Type alias for float or Float array of 0 dimensions
- `scalar_int`:
    Type alias for int or Integer array of 0 dimensions
- `index_array`:
    Type alias for a one-dimensional integer index array
- `non_jax_number`:
    Type alias for non-JAX numeric types (int, float)

Classes
-------
- `HistoryWindow`:
    A named tuple holding the ring buffer of iterate deltas
- `SubspaceBasis`:
    A named tuple holding the orthonormal basis of the slow subspace
- `ProjectionState`:
    A named tuple holding the projected solution and its coordinates
- `NewtonOperator`:
    A named tuple holding the projected Jacobian and the Newton matrix
- `SubspaceConfig`:
    A named tuple holding the sizing and numerical parameters

Factory Functions
-----------------
- `make_history_window`:
    Creates an empty HistoryWindow with runtime type checking
- `make_subspace_basis`:
    Creates an empty SubspaceBasis with runtime type checking
- `make_projection_state`:
    Creates a zeroed ProjectionState with runtime type checking
- `make_newton_operator`:
    Creates an identity NewtonOperator with runtime type checking
- `make_subspace_config`:
    Validates sizing parameters and creates a SubspaceConfig

    Note: Always use these factory functions instead of directly instantiating the
    NamedTuple classes so that sizes and dtypes stay consistent.
"""

from beartype import beartype
from beartype.typing import Any, NamedTuple, Optional, TypeAlias, Union
from jax.tree_util import register_pytree_node_class
import jax.numpy as jnp
from jaxtyping import Array, Float, Int, Integer, jaxtyped

scalar_float: TypeAlias = Union[float, Float[Array, ""]]
scalar_int: TypeAlias = Union[int, Integer[Array, ""]]
index_array: TypeAlias = Integer[Array, " n"]
non_jax_number: TypeAlias = Union[int, float]


@register_pytree_node_class
class HistoryWindow(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the fixed-capacity window of iterate deltas.

    Attributes
    ----------
    - `samples` (Float[Array, "nsample n"]):
        Ring buffer storage. Row `head` holds the oldest delta.
    - `head` (Int[Array, ""]):
        Physical slot of the oldest stored delta.
    - `length` (Int[Array, ""]):
        Number of valid deltas, never larger than the capacity.

    Notes
    -----
    Eviction only moves `head`; the storage is never reallocated.
    """

    samples: Float[Array, "nsample n"]
    head: Int[Array, ""]
    length: Int[Array, ""]

    def tree_flatten(self):
        return (
            (
                self.samples,
                self.head,
                self.length,
            ),
            None,
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


@register_pytree_node_class
class SubspaceBasis(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the basis of the slow/unstable subspace.

    Attributes
    ----------
    - `vectors` (Float[Array, "nbasis n"]):
        Basis storage, one vector per row.
    - `active` (Int[Array, ""]):
        Number of accepted vectors. Rows beyond it are reserve slots and
        may hold stale data after a reset.
    """

    vectors: Float[Array, "nbasis n"]
    active: Int[Array, ""]

    def tree_flatten(self):
        return (
            (
                self.vectors,
                self.active,
            ),
            None,
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


@register_pytree_node_class
class ProjectionState(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the projection of the iterate onto the basis.

    Attributes
    ----------
    - `coefficients` (Float[Array, "nbasis"]):
        Current coordinates of the iterate in the basis (p_R).
    - `previous` (Float[Array, "nbasis"]):
        Reference coordinates of the previous Newton step (pn_R).
    - `projected` (Float[Array, "n"]):
        Subspace component in the standard basis (p).
    - `basis_size` (Int[Array, ""]):
        Basis size at the last refresh of `previous`.
    """

    coefficients: Float[Array, " nbasis"]
    previous: Float[Array, " nbasis"]
    projected: Float[Array, " n"]
    basis_size: Int[Array, ""]

    def tree_flatten(self):
        return (
            (
                self.coefficients,
                self.previous,
                self.projected,
                self.basis_size,
            ),
            None,
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


@register_pytree_node_class
class NewtonOperator(NamedTuple):
    """
    Description
    -----------
    PyTree structure for the reduced Newton operator.

    Attributes
    ----------
    - `projected_jacobian` (Float[Array, "nbasis nbasis"]):
        R[i] . DR[j] for active i, j. Zero outside the active block.
    - `inverse` (Float[Array, "nbasis nbasis"]):
        (I - projected_jacobian)^-1 on the active block, identity elsewhere.
    - `derivatives` (Float[Array, "nbasis n"]):
        Adjoint products DR[j] = J^T R[j], one per row.
    - `condition_number` (Float[Array, ""]):
        Condition number of the inverted active block.
    """

    projected_jacobian: Float[Array, "nbasis nbasis"]
    inverse: Float[Array, "nbasis nbasis"]
    derivatives: Float[Array, "nbasis n"]
    condition_number: Float[Array, ""]

    def tree_flatten(self):
        return (
            (
                self.projected_jacobian,
                self.inverse,
                self.derivatives,
                self.condition_number,
            ),
            None,
        )

    @classmethod
    def tree_unflatten(cls, aux_data, children):
        return cls(*children)


class SubspaceConfig(NamedTuple):
    """
    Description
    -----------
    Static sizing and numerical parameters of a Newton update on a subspace.

    Attributes
    ----------
    - `nsample` (int):
        Capacity of the history window.
    - `nbasis` (int):
        Capacity of the subspace basis.
    - `npt` (int):
        Number of points including halos.
    - `nvar` (int):
        Number of variables per point.
    - `npt_domain` (int):
        Number of locally owned points.
    - `krylov_criterion` (float):
        Threshold on the ratio of the first two QR diagonal magnitudes.
    - `max_condition_number` (Optional[float]):
        Largest accepted condition number of I - projected Jacobian.
        None disables the check.
    """

    nsample: int
    nbasis: int
    npt: int
    nvar: int
    npt_domain: int
    krylov_criterion: float
    max_condition_number: Optional[float]

    @property
    def size(self) -> int:
        return self.npt * self.nvar

    @property
    def owned_size(self) -> int:
        return self.npt_domain * self.nvar


@jaxtyped(typechecker=beartype)
def make_history_window(
    nsample: int,
    size: int,
    dtype: Any = None,
) -> HistoryWindow:
    """
    Description
    -----------
    Factory function for an empty HistoryWindow.

    Parameters
    ----------
    - `nsample` (int):
        Capacity of the window.
    - `size` (int):
        Length of one flattened delta.
    - `dtype` (Any):
        Floating dtype of the storage. Default is JAX's default float.

    Returns
    -------
    - `HistoryWindow` instance
    """
    return HistoryWindow(
        samples=jnp.zeros((nsample, size), dtype=dtype),
        head=jnp.array(0, dtype=jnp.int32),
        length=jnp.array(0, dtype=jnp.int32),
    )


@jaxtyped(typechecker=beartype)
def make_subspace_basis(
    nbasis: int,
    size: int,
    dtype: Any = None,
) -> SubspaceBasis:
    """
    Description
    -----------
    Factory function for a SubspaceBasis without active vectors.

    Parameters
    ----------
    - `nbasis` (int):
        Capacity of the basis.
    - `size` (int):
        Length of one flattened basis vector.
    - `dtype` (Any):
        Floating dtype of the storage.

    Returns
    -------
    - `SubspaceBasis` instance
    """
    return SubspaceBasis(
        vectors=jnp.zeros((nbasis, size), dtype=dtype),
        active=jnp.array(0, dtype=jnp.int32),
    )


@jaxtyped(typechecker=beartype)
def make_projection_state(
    nbasis: int,
    size: int,
    dtype: Any = None,
) -> ProjectionState:
    """
    Description
    -----------
    Factory function for a zeroed ProjectionState.

    Parameters
    ----------
    - `nbasis` (int):
        Capacity of the basis.
    - `size` (int):
        Length of the flattened solution.
    - `dtype` (Any):
        Floating dtype of the storage.

    Returns
    -------
    - `ProjectionState` instance
    """
    return ProjectionState(
        coefficients=jnp.zeros((nbasis,), dtype=dtype),
        previous=jnp.zeros((nbasis,), dtype=dtype),
        projected=jnp.zeros((size,), dtype=dtype),
        basis_size=jnp.array(0, dtype=jnp.int32),
    )


@jaxtyped(typechecker=beartype)
def make_newton_operator(
    nbasis: int,
    size: int,
    dtype: Any = None,
) -> NewtonOperator:
    """
    Description
    -----------
    Factory function for a NewtonOperator that leaves coordinates unchanged.

    Parameters
    ----------
    - `nbasis` (int):
        Capacity of the basis.
    - `size` (int):
        Length of the flattened solution.
    - `dtype` (Any):
        Floating dtype of the storage.

    Returns
    -------
    - `NewtonOperator` instance with a zero projected Jacobian and an
      identity inverse
    """
    return NewtonOperator(
        projected_jacobian=jnp.zeros((nbasis, nbasis), dtype=dtype),
        inverse=jnp.eye(nbasis, dtype=dtype),
        derivatives=jnp.zeros((nbasis, size), dtype=dtype),
        condition_number=jnp.array(1.0, dtype=dtype),
    )


@jaxtyped(typechecker=beartype)
def make_subspace_config(
    nsample: int,
    nbasis: int,
    npt: int,
    nvar: int,
    npt_domain: int = 0,
    krylov_criterion: non_jax_number = 100.0,
    max_condition_number: Optional[non_jax_number] = 1e12,
) -> SubspaceConfig:
    """
    Description
    -----------
    Factory function for SubspaceConfig with validation of the sizes.

    Parameters
    ----------
    - `nsample` (int):
        Number of samples used to build the history, at least 2.
    - `nbasis` (int):
        Dimension of the basis of the unstable space.
    - `npt` (int):
        Size of the solution including any halos.
    - `nvar` (int):
        Number of solution variables.
    - `npt_domain` (int):
        Local size (<= npt). If 0 (default), the whole solution is owned.
    - `krylov_criterion` (float):
        Threshold for appending a new basis vector. Default 100.
    - `max_condition_number` (Optional[float]):
        Guard on the reduced Newton system. Default 1e12.

    Returns
    -------
    - `SubspaceConfig` instance

    Raises
    ------
    - `ValueError`:
        If `npt_domain > npt`, `nsample < 2` or a size is negative.
    """
    if npt_domain > npt or nsample < 2:
        msg = (
            f"Invalid Newton update parameters: nsample={nsample} must be >= 2 "
            f"and npt_domain={npt_domain} must not exceed npt={npt}."
        )
        raise ValueError(msg)
    if min(nbasis, npt, nvar, npt_domain) < 0:
        msg = (
            f"Invalid Newton update parameters: negative size in "
            f"nbasis={nbasis}, npt={npt}, nvar={nvar}, npt_domain={npt_domain}."
        )
        raise ValueError(msg)
    return SubspaceConfig(
        nsample=nsample,
        nbasis=nbasis,
        npt=npt,
        nvar=nvar,
        npt_domain=npt_domain if npt_domain else npt,
        krylov_criterion=krylov_criterion,
        max_condition_number=max_condition_number,
    )
