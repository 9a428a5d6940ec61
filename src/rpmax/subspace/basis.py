"""
Module: rpmax.subspace.basis
----------------------------

Online discovery of the slow/unstable subspace.

Once the history window is full, its deltas are factorized with QR. The
ratio of the first two diagonal magnitudes of the triangular factor (the
Krylov criterion) measures how strongly the window is dominated by one
direction. When it exceeds a threshold, the first column of the
orthogonal factor is orthonormalized against the current basis and
appended.

Functions
---------
- `window_r_factor`:
    Triangular QR factor of the window, combined across processes
- `window_diagonal`:
    Diagonal magnitudes used by the Krylov criterion
- `krylov_quotients`:
    Ratios of successive diagonal magnitudes
- `krylov_criterion_met`:
    Acceptance test on a quotient, rejecting NaN
- `orthonormalize`:
    Gram-Schmidt sweep of a candidate against the active basis
- `check_basis`:
    Full basis-growth step on a history window
"""

import logging

import jax.numpy as jnp
from beartype.typing import Tuple
from jaxtyping import Array, Bool, Float, Int

from rpmax.parallel.communicators import Communicator, global_dot, global_norm
from rpmax.subspace.history import history_is_full, history_samples
from rpmax.subspace.subspace_types import HistoryWindow, SubspaceBasis, scalar_float

logger = logging.getLogger(__name__)


def window_r_factor(
    samples: Float[Array, "k n"],
    owned: slice,
    communicator: Communicator,
) -> Float[Array, "m k"]:
    """
    Description
    -----------
    Upper-triangular QR factor of the matrix whose columns are the window
    deltas, restricted to the owned entries.

    With several processes each one factorizes its owned rows, the local
    factors are gathered and stacked, and the stack is factorized again
    (TSQR). All processes then hold the same factor up to row signs.

    Parameters
    ----------
    - `samples` (Float[Array, "k n"]):
        Window deltas in insertion order, one per row.
    - `owned` (slice):
        Owned entries of a flattened solution.
    - `communicator` (Communicator):
        Process group.

    Returns
    -------
    - `r_factor` (Float[Array, "m k"]):
        Triangular factor with `m = min(rows, k)`.
    """
    columns: Float[Array, "n k"] = samples[:, owned].T
    r_local: Float[Array, "m k"] = jnp.linalg.qr(columns, mode="r")
    if communicator.size == 1:
        return r_local
    stacked: Float[Array, "p k"] = jnp.concatenate(communicator.allgather(r_local), axis=0)
    return jnp.linalg.qr(stacked, mode="r")


def window_diagonal(
    r_factor: Float[Array, "m k"],
) -> Float[Array, " k"]:
    """
    Description
    -----------
    Diagonal of the triangular factor, one entry per window column.

    When the window holds more deltas than the factor has rows, the
    missing trailing entries are read from the last row of the factor.
    For a one-entry solution the window `[1.0, 0.01]` thus yields the
    diagonal `[1.0, 0.01]`.

    Parameters
    ----------
    - `r_factor` (Float[Array, "m k"]):
        Triangular QR factor.

    Returns
    -------
    - `diagonal` (Float[Array, " k"]):
        Signed diagonal entries.
    """
    nrows, ncols = r_factor.shape
    if nrows == 0:
        return jnp.zeros((ncols,), dtype=r_factor.dtype)
    columns: Int[Array, " k"] = jnp.arange(ncols)
    rows: Int[Array, " k"] = jnp.minimum(columns, nrows - 1)
    return r_factor[rows, columns]


def krylov_quotients(
    diagonal: Float[Array, " k"],
) -> Float[Array, " q"]:
    """
    Description
    -----------
    Ratios |d[i]| / |d[i+1]| of successive diagonal magnitudes.

    A zero denominator leaves the quotient at zero, so it can never pass
    the criterion.

    Parameters
    ----------
    - `diagonal` (Float[Array, " k"]):
        Diagonal of the window's triangular factor.

    Returns
    -------
    - `quotients` (Float[Array, " q"]):
        `k - 1` quotients.
    """
    numerators: Float[Array, " q"] = jnp.abs(diagonal[:-1])
    denominators: Float[Array, " q"] = jnp.abs(diagonal[1:])
    nonzero: Bool[Array, " q"] = denominators != 0
    safe: Float[Array, " q"] = jnp.where(nonzero, denominators, 1.0)
    return jnp.where(nonzero, numerators / safe, 0.0)


def krylov_criterion_met(
    quotient: Float[Array, ""],
    threshold: scalar_float,
) -> Bool[Array, ""]:
    return (jnp.abs(quotient) > threshold) & ~jnp.isnan(quotient)


def orthonormalize(
    candidate: Float[Array, " n"],
    vectors: Float[Array, "nbasis n"],
    active: int,
    owned: slice,
    communicator: Communicator,
) -> Tuple[Float[Array, " n"], Float[Array, ""]]:
    """
    Description
    -----------
    Orthonormalize a candidate against the first `active` basis vectors.

    Parameters
    ----------
    - `candidate` (Float[Array, " n"]):
        Vector to orthonormalize.
    - `vectors` (Float[Array, "nbasis n"]):
        Basis storage.
    - `active` (int):
        Number of accepted basis vectors.
    - `owned` (slice):
        Owned entries.
    - `communicator` (Communicator):
        Process group.

    Returns
    -------
    - `unit_vector` (Float[Array, " n"]):
        Normalized candidate (meaningless when `norm` is zero).
    - `norm` (Float[Array, ""]):
        Norm of the candidate after the sweep.

    Flow
    ----
    1. For each active vector in order, subtract the candidate's
       projection onto it (modified Gram-Schmidt)
    2. Compute the global norm of what remains
    3. Scale to unit length
    """
    for i in range(active):
        preceding: Float[Array, " n"] = vectors[i]
        coefficient: Float[Array, ""] = global_dot(candidate, preceding, owned, communicator)
        candidate = candidate - coefficient * preceding
    norm: Float[Array, ""] = global_norm(candidate, owned, communicator)
    return candidate / norm, norm


def check_basis(
    window: HistoryWindow,
    basis: SubspaceBasis,
    krylov_criterion: scalar_float,
    owned: slice,
    communicator: Communicator,
) -> Tuple[SubspaceBasis, bool]:
    """
    Description
    -----------
    Check the history window for a new slow direction and append it to
    the basis when the Krylov criterion is fulfilled.

    Parameters
    ----------
    - `window` (HistoryWindow):
        History of stable-part deltas.
    - `basis` (SubspaceBasis):
        Current basis.
    - `krylov_criterion` (scalar_float):
        Threshold on the first Krylov quotient.
    - `owned` (slice):
        Owned entries.
    - `communicator` (Communicator):
        Process group.

    Returns
    -------
    - `new_basis` (SubspaceBasis):
        Basis, with one more active vector if it grew.
    - `grew` (bool):
        Whether a vector was appended.

    Flow
    ----
    1. Return unchanged unless the window is full
    2. Return unchanged when the basis is at capacity
    3. Factorize the window and compute the first Krylov quotient
    4. Reject when the quotient fails the criterion or is NaN
    5. Take the first column of Q as candidate, orthonormalize it
    6. Reject a degenerate candidate, otherwise append it
    """
    if not bool(history_is_full(window)):
        return basis, False

    active: int = int(basis.active)
    capacity: int = basis.vectors.shape[0]
    if active >= capacity:
        # TODO: replace or rotate basis vectors once a maintenance policy is chosen.
        logger.debug("Basis at capacity (%d vectors), no maintenance performed", capacity)
        return basis, False

    samples: Float[Array, "k n"] = history_samples(window)
    r_factor: Float[Array, "m k"] = window_r_factor(samples, owned, communicator)
    diagonal: Float[Array, " k"] = window_diagonal(r_factor)
    quotient: Float[Array, ""] = krylov_quotients(diagonal)[0]

    if not bool(krylov_criterion_met(quotient, krylov_criterion)):
        return basis, False

    candidate: Float[Array, " n"] = samples[0] / diagonal[0]
    unit_vector, norm = orthonormalize(candidate, basis.vectors, active, owned, communicator)
    if not bool(jnp.isfinite(norm)) or float(norm) == 0.0:
        logger.debug("Rejected degenerate basis candidate (norm %s)", float(norm))
        return basis, False

    logger.info(
        "Krylov criterion fulfilled (%g), appending basis vector %d of %d",
        float(quotient),
        active + 1,
        capacity,
    )
    vectors: Float[Array, "nbasis n"] = basis.vectors.at[active].set(unit_vector)
    new_basis: SubspaceBasis = SubspaceBasis(vectors=vectors, active=basis.active + 1)
    return new_basis, True
