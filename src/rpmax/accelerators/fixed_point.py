"""
Module: rpmax.accelerators.fixed_point
--------------------------------------

Base fixed-point accelerators acting on the stable part of the solution.

The subspace corrector hands the stable complement of every iterate to
one of these accelerators and adds its Newton-corrected subspace part
back to the accelerator's result.

Classes
-------
- `FixedPointAccelerator`:
    Protocol shared by all base accelerators
- `PlainFixedPoint`:
    No acceleration, the stored iterate is the result
- `InverseLeastSquares`:
    Interface quasi-Newton with inverse least-squares (Anderson type II)
"""

import logging

import jax.numpy as jnp
from beartype.typing import Optional, Protocol
from jaxtyping import Array, Float

from rpmax.parallel.communicators import Communicator, SerialCommunicator, global_matvec
from rpmax.subspace.history import history_insert, history_reset, history_samples
from rpmax.subspace.subspace_types import HistoryWindow, make_history_window

logger = logging.getLogger(__name__)


class FixedPointAccelerator(Protocol):
    """One accelerated iterate per `store` / `compute` pair."""

    def resize(
        self,
        size: int,
        owned: slice = slice(None),
        communicator: Optional[Communicator] = None,
    ) -> None: ...

    def reset(self) -> None: ...

    def store(self, work: Float[Array, " n"]) -> None: ...

    def compute(self) -> Float[Array, " n"]: ...

    def fp_result(self) -> Float[Array, " n"]: ...


class PlainFixedPoint:
    """Plain fixed-point iteration: `compute` returns the stored iterate."""

    def __init__(self):
        self._work: Optional[Float[Array, " n"]] = None

    def resize(
        self,
        size: int,
        owned: slice = slice(None),
        communicator: Optional[Communicator] = None,
    ) -> None:
        self._work = None

    def reset(self) -> None:
        pass

    def store(self, work: Float[Array, " n"]) -> None:
        self._work = work

    def compute(self) -> Float[Array, " n"]:
        return self.fp_result()

    def fp_result(self) -> Float[Array, " n"]:
        if self._work is None:
            raise RuntimeError("No iterate stored; call store() first.")
        return self._work


class InverseLeastSquares:
    """
    Description
    -----------
    Quasi-Newton acceleration with an inverse least-squares Jacobian
    approximation built from the last `nsample` fixed-point results.

    With fixed-point results g_i, their inputs x_i and residuals
    r_i = g_i - x_i, the next iterate is x = g_k - ΔG γ where γ minimizes
    ||r_k - ΔR γ|| and ΔG, ΔR hold successive differences of the stored
    results and residuals.

    Parameters
    ----------
    - `nsample` (int):
        Number of stored results and residuals. Default 5.
    - `regularization` (float):
        Relative Tikhonov term added to the normal equations. Default 1e-10.
    """

    def __init__(
        self,
        nsample: int = 5,
        regularization: float = 1e-10,
    ):
        if nsample < 2:
            msg = f"Invalid quasi-Newton parameters: nsample={nsample} must be >= 2."
            raise ValueError(msg)
        self.nsample = nsample
        self.regularization = regularization
        self.owned: slice = slice(None)
        self.communicator: Communicator = SerialCommunicator()
        self._results: Optional[HistoryWindow] = None
        self._residuals: Optional[HistoryWindow] = None
        self._work: Optional[Float[Array, " n"]] = None
        self._corrected: Optional[Float[Array, " n"]] = None

    def resize(
        self,
        size: int,
        owned: slice = slice(None),
        communicator: Optional[Communicator] = None,
    ) -> None:
        self.owned = owned
        if communicator is not None:
            self.communicator = communicator
        self._results = make_history_window(self.nsample, size)
        self._residuals = make_history_window(self.nsample, size)
        self._work = None
        self._corrected = None

    def reset(self) -> None:
        """Discard the history, keeping the most recent sample."""
        self._results = history_reset(self._results)
        self._residuals = history_reset(self._residuals)

    def store(self, work: Float[Array, " n"]) -> None:
        self._work = work

    def fp_result(self) -> Float[Array, " n"]:
        if self._corrected is None:
            raise RuntimeError("No result available; call compute() first.")
        return self._corrected

    def compute(self) -> Float[Array, " n"]:
        """
        Description
        -----------
        Compute the next accelerated iterate from the stored result.

        Returns
        -------
        - `corrected` (Float[Array, " n"]):
            Accelerated iterate, also the input assumed for the next call.

        Flow
        ----
        1. First call: nothing to mix, return the fixed-point result
        2. Store the result and its residual against the last output
        3. With at least two samples, solve the regularized normal
           equations for the mixing coefficients
        4. Subtract the mixed result differences from the result
        """
        if self._work is None or self._results is None:
            raise RuntimeError("No iterate stored; call resize() and store() first.")
        result: Float[Array, " n"] = self._work
        if self._corrected is None:
            self._corrected = result
            return self._corrected

        residual: Float[Array, " n"] = result - self._corrected
        self._results = history_insert(self._results, result)
        self._residuals = history_insert(self._residuals, residual)
        if int(self._residuals.length) < 2:
            self._corrected = result
            return self._corrected

        results: Float[Array, "k n"] = history_samples(self._results)
        residuals: Float[Array, "k n"] = history_samples(self._residuals)
        delta_results: Float[Array, "k1 n"] = jnp.diff(results, axis=0)
        delta_residuals: Float[Array, "k1 n"] = jnp.diff(residuals, axis=0)

        local_gram: Float[Array, "k1 k1"] = (
            delta_residuals[:, self.owned] @ delta_residuals[:, self.owned].T
        )
        gram: Float[Array, "k1 k1"] = self.communicator.allreduce_sum(local_gram)
        rhs: Float[Array, " k1"] = global_matvec(
            delta_residuals, residual, self.owned, self.communicator
        )
        trace: Float[Array, ""] = jnp.trace(gram)
        # stagnated history: every difference vanishes and gamma must be zero
        scale: Float[Array, ""] = jnp.where(trace > 0, trace, 1.0)
        shift: Float[Array, "k1 k1"] = (
            self.regularization * scale * jnp.eye(gram.shape[0], dtype=gram.dtype)
        )
        gamma: Float[Array, " k1"] = jnp.linalg.solve(gram + shift, rhs)
        self._corrected = result - gamma @ delta_results
        logger.debug("Inverse least-squares step over %d samples", int(self._residuals.length))
        return self._corrected
