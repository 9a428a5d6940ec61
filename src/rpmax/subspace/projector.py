"""
Module: rpmax.subspace.projector
--------------------------------

Projection of the fixed-point map's Jacobian onto the subspace basis.

For every active basis vector R[j] one adjoint pass of the
differentiation oracle yields DR[j] = Jᵀ R[j]. The projected Jacobian
collects R[i] · DR[j], and the Newton operator is the inverse of
I - projected Jacobian. Both are small dense `nbasis x nbasis` matrices;
only their leading `active x active` block is meaningful, the Newton
operator being the identity outside it.

Functions
---------
- `adjoint_basis_products`:
    DR[j] = Jᵀ R[j] for every active basis vector through the oracle
- `projected_jacobian_matrix`:
    Global inner products R[i] · DR[j]
- `newton_inverse_matrix`:
    (I - projected Jacobian)⁻¹ with identity outside the active block
- `active_condition_number`:
    Condition number of the active block of I - projected Jacobian
- `compute_projected_jacobian`:
    Full projection step producing a NewtonOperator
"""

import logging

import jax.numpy as jnp
from beartype.typing import Optional
from jaxtyping import Array, Bool, Float

from rpmax.jacobian.oracle import AdjointOracle
from rpmax.parallel.communicators import Communicator
from rpmax.subspace.subspace_types import (
    NewtonOperator,
    SubspaceBasis,
    index_array,
    non_jax_number,
    scalar_int,
)

logger = logging.getLogger(__name__)


def _active_mask(
    nbasis: int,
    active: scalar_int,
) -> Bool[Array, "nbasis nbasis"]:
    in_basis: Bool[Array, " nbasis"] = jnp.arange(nbasis) < active
    return in_basis[:, None] & in_basis[None, :]


def adjoint_basis_products(
    basis: SubspaceBasis,
    oracle: AdjointOracle,
    input_indices: index_array,
    output_indices: index_array,
) -> Float[Array, "nbasis n"]:
    """
    Description
    -----------
    Run one adjoint pass per active basis vector.

    Parameters
    ----------
    - `basis` (SubspaceBasis):
        Current basis.
    - `oracle` (AdjointOracle):
        Differentiation oracle recorded at the current iterate.
    - `input_indices` (index_array):
        Oracle input location of every solution entry.
    - `output_indices` (index_array):
        Oracle output location of every solution entry.

    Returns
    -------
    - `derivatives` (Float[Array, "nbasis n"]):
        Row j holds Jᵀ R[j] for active j, zeros elsewhere.

    Flow
    ----
    1. Acquire the oracle
    2. For each active vector: clear seeds, seed it at the output
       locations, propagate, read back at the input locations
    """
    active: int = int(basis.active)
    derivatives: Float[Array, "nbasis n"] = jnp.zeros_like(basis.vectors)
    with oracle.acquire():
        for j in range(active):
            oracle.clear_seeds()
            oracle.set_seeds(output_indices, basis.vectors[j])
            oracle.propagate_adjoint()
            derivatives = derivatives.at[j].set(oracle.get_derivatives(input_indices))
            logger.debug("Evaluated Rᵀ (dG/du)ᵀ R[%d]", j)
    return derivatives


def projected_jacobian_matrix(
    vectors: Float[Array, "nbasis n"],
    derivatives: Float[Array, "nbasis n"],
    active: scalar_int,
    owned: slice,
    communicator: Communicator,
) -> Float[Array, "nbasis nbasis"]:
    """
    Description
    -----------
    Assemble ProjectedJacobian[i, j] = R[i] · DR[j].

    Parameters
    ----------
    - `vectors` (Float[Array, "nbasis n"]):
        Basis storage.
    - `derivatives` (Float[Array, "nbasis n"]):
        Adjoint products, one per row.
    - `active` (scalar_int):
        Number of active basis vectors.
    - `owned` (slice):
        Owned entries.
    - `communicator` (Communicator):
        Process group.

    Returns
    -------
    - `projected_jacobian` (Float[Array, "nbasis nbasis"]):
        Zero outside the active block.
    """
    nbasis: int = vectors.shape[0]
    local: Float[Array, "nbasis nbasis"] = vectors[:, owned] @ derivatives[:, owned].T
    reduced: Float[Array, "nbasis nbasis"] = communicator.allreduce_sum(local)
    return jnp.where(_active_mask(nbasis, active), reduced, 0.0)


def newton_inverse_matrix(
    projected_jacobian: Float[Array, "nbasis nbasis"],
    active: scalar_int,
) -> Float[Array, "nbasis nbasis"]:
    """
    Description
    -----------
    Newton operator (I - projected Jacobian)⁻¹ by dense inversion.

    Entries outside the active block are masked out first, so the result
    is block diagonal with the identity on the inactive block.

    Parameters
    ----------
    - `projected_jacobian` (Float[Array, "nbasis nbasis"]):
        Projected Jacobian.
    - `active` (scalar_int):
        Number of active basis vectors.

    Returns
    -------
    - `inverse` (Float[Array, "nbasis nbasis"]):
        Newton operator.
    """
    nbasis: int = projected_jacobian.shape[0]
    masked: Float[Array, "nbasis nbasis"] = jnp.where(
        _active_mask(nbasis, active), projected_jacobian, 0.0
    )
    system: Float[Array, "nbasis nbasis"] = jnp.eye(nbasis, dtype=masked.dtype) - masked
    return jnp.linalg.inv(system)


def active_condition_number(
    projected_jacobian: Float[Array, "nbasis nbasis"],
    active: int,
) -> Float[Array, ""]:
    """2-norm condition number of the active block of I - projected Jacobian."""
    block: Float[Array, "a a"] = projected_jacobian[:active, :active]
    system: Float[Array, "a a"] = jnp.eye(active, dtype=block.dtype) - block
    return jnp.linalg.cond(system)


def compute_projected_jacobian(
    basis: SubspaceBasis,
    oracle: AdjointOracle,
    owned: slice,
    communicator: Communicator,
    input_indices: Optional[index_array] = None,
    output_indices: Optional[index_array] = None,
    max_condition_number: Optional[non_jax_number] = 1e12,
) -> NewtonOperator:
    """
    Description
    -----------
    Compute the projected Jacobian and the Newton operator for the
    current basis. Meant to be called right after the basis grew.

    Parameters
    ----------
    - `basis` (SubspaceBasis):
        Current basis.
    - `oracle` (AdjointOracle):
        Differentiation oracle recorded at the current iterate.
    - `owned` (slice):
        Owned entries.
    - `communicator` (Communicator):
        Process group.
    - `input_indices` (Optional[index_array]):
        Oracle input locations. Default is the identity mapping.
    - `output_indices` (Optional[index_array]):
        Oracle output locations. Default is the identity mapping.
    - `max_condition_number` (Optional[non_jax_number]):
        Largest accepted condition number of I - projected Jacobian.
        Above it, or when it is not finite, the Newton operator falls back
        to the identity. None disables the check. Default 1e12.

    Returns
    -------
    - `operator` (NewtonOperator):
        Projected Jacobian, Newton operator, adjoint products and the
        condition number of the inverted block.

    Flow
    ----
    1. Collect DR through one adjoint pass per active vector
    2. Assemble R[i] · DR[j] with global reductions
    3. Check the conditioning of the active block
    4. Invert, or fall back to the identity when ill-conditioned
    """
    nbasis, size = basis.vectors.shape
    active: int = int(basis.active)
    if input_indices is None:
        input_indices = jnp.arange(size)
    if output_indices is None:
        output_indices = jnp.arange(size)

    derivatives: Float[Array, "nbasis n"] = adjoint_basis_products(
        basis, oracle, input_indices, output_indices
    )
    projected_jacobian: Float[Array, "nbasis nbasis"] = projected_jacobian_matrix(
        basis.vectors, derivatives, active, owned, communicator
    )
    condition_number: Float[Array, ""] = (
        active_condition_number(projected_jacobian, active)
        if active > 0
        else jnp.array(1.0, dtype=basis.vectors.dtype)
    )

    ill_conditioned: bool = max_condition_number is not None and (
        not bool(jnp.isfinite(condition_number))
        or float(condition_number) > max_condition_number
    )
    inverse: Float[Array, "nbasis nbasis"]
    if ill_conditioned:
        logger.warning(
            "I - projected Jacobian is ill-conditioned (cond = %g > %g), "
            "Newton update on the subspace falls back to the identity",
            float(condition_number),
            max_condition_number,
        )
        inverse = jnp.eye(nbasis, dtype=basis.vectors.dtype)
    else:
        inverse = newton_inverse_matrix(projected_jacobian, active)

    return NewtonOperator(
        projected_jacobian=projected_jacobian,
        inverse=inverse,
        derivatives=derivatives,
        condition_number=condition_number,
    )
