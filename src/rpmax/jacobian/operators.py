"""
Module: rpmax.jacobian.operators
--------------------------------

Jacobian operator primitives for matrix-free linear algebra.

These functions wrap JAX's autodiff to expose the fixed-point map's
Jacobian through products only, without ever forming the matrix.

Functions
---------
- `flatten_map`:
    Wrap a map on shaped arrays into a map on flat vectors
- `vjp_operator`:
    Vector-Jacobian product Jᵀ @ u
- `value_and_vjp_operator`:
    Map value together with the vector-Jacobian product operator
"""

from beartype.typing import Callable, Tuple
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float


def flatten_map(
    fixed_point_map: Callable[[Float[Array, "..."]], Float[Array, "..."]],
    shape: Tuple[int, ...],
) -> Callable[[Float[Array, " n"]], Float[Array, " n"]]:
    """
    Description
    -----------
    Wrap a fixed-point map acting on arrays of `shape` into a map acting
    on flattened vectors, row-major over (point, variable).

    Parameters
    ----------
    - `fixed_point_map` (Callable[[Float[Array, "..."]], Float[Array, "..."]]):
        Map G on solution arrays of the given shape.
    - `shape` (Tuple[int, ...]):
        Shape of one solution array, e.g. (npt, nvar).

    Returns
    -------
    - `flat_fn` (Callable[[Float[Array, " n"]], Float[Array, " n"]]):
        G on flattened solutions.
    """
    def flat_fn(
        flat_solution: Float[Array, " n"],
    ) -> Float[Array, " n"]:
        return jnp.ravel(fixed_point_map(jnp.reshape(flat_solution, shape)))

    return flat_fn


def vjp_operator(
    forward_fn: Callable[[Float[Array, " n"]], Float[Array, " m"]],
    point: Float[Array, " n"],
) -> Callable[[Float[Array, " m"]], Float[Array, " n"]]:
    """
    Description
    -----------
    Pullback of `forward_fn` at `point`, i.e. u -> Jᵀ @ u with
    J = ∂forward_fn/∂x.

    Parameters
    ----------
    - `forward_fn` (Callable[[Float[Array, " n"]], Float[Array, " m"]]):
        Map to differentiate.
    - `point` (Float[Array, " n"]):
        Point at which to linearize.

    Returns
    -------
    - `vjp_fn` (Callable[[Float[Array, " m"]], Float[Array, " n"]]):
        Function that computes Jᵀ @ u for any cotangent vector u.
    """
    _, vjp_fn = value_and_vjp_operator(forward_fn, point)
    return vjp_fn


def value_and_vjp_operator(
    forward_fn: Callable[[Float[Array, " n"]], Float[Array, " m"]],
    point: Float[Array, " n"],
) -> Tuple[Float[Array, " m"], Callable[[Float[Array, " m"]], Float[Array, " n"]]]:
    """
    Description
    -----------
    Evaluate `forward_fn` at `point` and capture its reverse-mode
    linearization.

    Parameters
    ----------
    - `forward_fn` (Callable[[Float[Array, " n"]], Float[Array, " m"]]):
        Map to differentiate.
    - `point` (Float[Array, " n"]):
        Point at which to linearize.

    Returns
    -------
    - `value` (Float[Array, " m"]):
        forward_fn(point).
    - `vjp_fn` (Callable[[Float[Array, " m"]], Float[Array, " n"]]):
        Function that computes Jᵀ @ u for any cotangent vector u.

    Flow
    ----
    1. Run jax.vjp once for the value and the pullback
    2. Wrap the pullback so it returns the single input cotangent
    """
    value, vjp_fn_raw = jax.vjp(forward_fn, point)

    def vjp_fn(
        cotangent_vector: Float[Array, " m"],
    ) -> Float[Array, " n"]:
        result_tuple: Tuple[Float[Array, " n"], ...] = vjp_fn_raw(cotangent_vector)
        return result_tuple[0]

    return value, vjp_fn
