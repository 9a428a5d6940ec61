"""
Module: rpmax.jacobian.oracle
-----------------------------

Adjoint differentiation oracle for the fixed-point map.

The oracle follows the seed / propagate / read-back cycle of tape-based
reverse-mode tools: derivative seeds are set at output locations, one
adjoint pass is run, and accumulated derivatives are read back at input
locations. Here the "tape" is the linearization captured by `jax.vjp`
when a point is recorded.

Seeds and adjoints are shared mutable state, so the oracle is a
single-owner handle: a consumer acquires it for the duration of its
seed/propagate/read cycle.

Classes
-------
- `AdjointOracle`:
    Seed/propagate/read-back interface over a recorded JAX linearization
"""

import logging
from contextlib import contextmanager

import jax.numpy as jnp
from beartype.typing import Callable, Iterator, Optional
from jaxtyping import Array, Float, Integer

from rpmax.jacobian.operators import value_and_vjp_operator

logger = logging.getLogger(__name__)


class AdjointOracle:
    """
    Description
    -----------
    Vector-Jacobian products of a fixed-point map G through explicit seeds.

    After `propagate_adjoint`, `get_derivative(i)` returns the i-th entry
    of Jᵀ @ s, where s is the seed vector assembled since the last
    `clear_seeds` and J is the Jacobian of G at the recorded point.

    Parameters
    ----------
    - `fixed_point_map` (Callable[[Float[Array, " n"]], Float[Array, " n"]]):
        Map G on flattened solutions. Use `flatten_map` for shaped maps.
    - `point` (Optional[Float[Array, " n"]]):
        If given, recorded immediately.
    """

    def __init__(
        self,
        fixed_point_map: Callable[[Float[Array, " n"]], Float[Array, " n"]],
        point: Optional[Float[Array, " n"]] = None,
    ):
        self.fixed_point_map = fixed_point_map
        self._vjp_fn: Optional[Callable[[Float[Array, " n"]], Float[Array, " n"]]] = None
        self._value: Optional[Float[Array, " n"]] = None
        self._seeds: Optional[Float[Array, " n"]] = None
        self._adjoints: Optional[Float[Array, " n"]] = None
        self._owned: bool = False
        if point is not None:
            self.record(point)

    @property
    def value(self) -> Optional[Float[Array, " n"]]:
        """G at the recorded point."""
        return self._value

    def record(
        self,
        point: Float[Array, " n"],
    ) -> Float[Array, " n"]:
        """
        Description
        -----------
        Linearize G at `point`, replacing any earlier recording.

        Parameters
        ----------
        - `point` (Float[Array, " n"]):
            Flattened solution at which G is evaluated.

        Returns
        -------
        - `value` (Float[Array, " n"]):
            G(point).
        """
        self._value, self._vjp_fn = value_and_vjp_operator(
            self.fixed_point_map, jnp.asarray(point)
        )
        self._seeds = jnp.zeros_like(self._value)
        self._adjoints = None
        logger.debug("Recorded linearization with %d outputs", self._value.size)
        return self._value

    @contextmanager
    def acquire(self) -> Iterator["AdjointOracle"]:
        """Hold exclusive use of the seeds and adjoints for one cycle."""
        if self._owned:
            raise RuntimeError("AdjointOracle is already acquired by another consumer.")
        self._owned = True
        try:
            yield self
        finally:
            self._owned = False

    def _require_recording(self) -> None:
        if self._vjp_fn is None:
            raise RuntimeError("AdjointOracle has no recorded point; call record() first.")

    def clear_seeds(self) -> None:
        self._require_recording()
        self._seeds = jnp.zeros_like(self._value)
        self._adjoints = None

    def set_seed(self, output_index: int, value: float) -> None:
        self._require_recording()
        self._seeds = self._seeds.at[output_index].set(value)

    def set_seeds(
        self,
        output_indices: Integer[Array, " k"],
        values: Float[Array, " k"],
    ) -> None:
        """Vectorized `set_seed` over many output locations."""
        self._require_recording()
        self._seeds = self._seeds.at[output_indices].set(values.astype(self._seeds.dtype))

    def propagate_adjoint(self) -> None:
        self._require_recording()
        self._adjoints = self._vjp_fn(self._seeds)

    def get_derivative(self, input_index: int) -> Float[Array, ""]:
        if self._adjoints is None:
            raise RuntimeError("No adjoint available; call propagate_adjoint() first.")
        return self._adjoints[input_index]

    def get_derivatives(
        self,
        input_indices: Integer[Array, " k"],
    ) -> Float[Array, " k"]:
        """Vectorized `get_derivative` over many input locations."""
        if self._adjoints is None:
            raise RuntimeError("No adjoint available; call propagate_adjoint() first.")
        return self._adjoints[input_indices]
