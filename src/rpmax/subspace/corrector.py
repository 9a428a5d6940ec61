"""
Module: rpmax.subspace.corrector
--------------------------------

Newton update on the slow/unstable subspace of a fixed-point iteration.

Following Shroff & Keller's recursive projection method, every raw
iterate u is split into its projection p = R Rᵀ u onto the basis of slow
modes and the stable complement q = u - p. The complement goes to a base
fixed-point accelerator, while the subspace coordinates take a Newton
step

    p_R = pn_R + (I - Rᵀ Jᵀ R)⁻¹ (p_R - pn_R)

where (Rᵀ Jᵀ R)[i, j] = R[i] · Jᵀ R[j] comes from one adjoint pass per
basis vector, before both parts are recombined. The basis grows from the
history of complement deltas whenever the Krylov criterion detects a new
dominant direction.

Classes
-------
- `NewtonUpdateOnSubspace`:
    Stateful driver exposing resize / reset / size / compute

Functions
---------
- `project_onto_basis`:
    Coordinates of a vector in the active basis
- `reconstruct_from_basis`:
    Vector in the standard basis from basis coordinates
- `newton_coefficients`:
    Newton step on the subspace coordinates
"""

import logging

import jax.numpy as jnp
from beartype.typing import Optional, Tuple
from jaxtyping import Array, Bool, Float, Integer

from rpmax.accelerators.fixed_point import FixedPointAccelerator, PlainFixedPoint
from rpmax.jacobian.oracle import AdjointOracle
from rpmax.parallel.communicators import Communicator, SerialCommunicator, global_matvec, owned_slice
from rpmax.subspace import basis as basis_builder
from rpmax.subspace import projector
from rpmax.subspace.history import history_insert, history_reset
from rpmax.subspace.subspace_types import (
    HistoryWindow,
    NewtonOperator,
    ProjectionState,
    SubspaceBasis,
    SubspaceConfig,
    make_history_window,
    make_newton_operator,
    make_projection_state,
    make_subspace_basis,
    index_array,
    make_subspace_config,
    non_jax_number,
    scalar_int,
)

logger = logging.getLogger(__name__)


def project_onto_basis(
    vectors: Float[Array, "nbasis n"],
    active: scalar_int,
    vector: Float[Array, " n"],
    owned: slice,
    communicator: Communicator,
) -> Float[Array, " nbasis"]:
    """
    Description
    -----------
    Coordinates Rᵀ v of a vector in the active basis.

    Reserve slots beyond `active` get zero coordinates even if they hold
    stale vectors.

    Parameters
    ----------
    - `vectors` (Float[Array, "nbasis n"]):
        Basis storage.
    - `active` (scalar_int):
        Number of active basis vectors.
    - `vector` (Float[Array, " n"]):
        Flattened solution.
    - `owned` (slice):
        Owned entries.
    - `communicator` (Communicator):
        Process group.

    Returns
    -------
    - `coefficients` (Float[Array, " nbasis"]):
        Coordinates of the vector.
    """
    coefficients: Float[Array, " nbasis"] = global_matvec(vectors, vector, owned, communicator)
    in_basis: Bool[Array, " nbasis"] = jnp.arange(vectors.shape[0]) < active
    return jnp.where(in_basis, coefficients, 0.0)


def reconstruct_from_basis(
    vectors: Float[Array, "nbasis n"],
    coefficients: Float[Array, " nbasis"],
) -> Float[Array, " n"]:
    return coefficients @ vectors


def newton_coefficients(
    coefficients: Float[Array, " nbasis"],
    previous: Float[Array, " nbasis"],
    inverse: Float[Array, "nbasis nbasis"],
) -> Float[Array, " nbasis"]:
    """Newton step pn_R + N (p_R - pn_R) on the subspace coordinates."""
    return previous + inverse @ (coefficients - previous)


class NewtonUpdateOnSubspace:
    """
    Description
    -----------
    Accelerate a fixed-point iteration by Newton updates on a detected
    subspace of slow or unstable modes.

    The outer solver calls `compute` once per fixed-point iteration with
    the raw (uncorrected) iterate G(u) and continues with the returned
    corrected iterate. The oracle, when given, must be recorded at the
    current iterate u before `compute` so that a newly grown basis is
    projected with the current Jacobian.

    Parameters
    ----------
    - `oracle` (Optional[AdjointOracle]):
        Differentiation oracle for the fixed-point map.
    - `accelerator` (Optional[FixedPointAccelerator]):
        Base accelerator for the stable part. Default `PlainFixedPoint`.
    - `communicator` (Optional[Communicator]):
        Process group. Default `SerialCommunicator`.
    - `krylov_criterion` (non_jax_number):
        Threshold for appending basis vectors. Default 100.
    - `max_condition_number` (Optional[non_jax_number]):
        Guard on I - projected Jacobian. Default 1e12, None disables it.
    - `nsample`, `nbasis`, `npt`, `nvar`, `npt_domain` (Optional[int]):
        When `nsample` is given, forwarded to `resize`; `nbasis`, `npt`
        and `nvar` are then required.
    """

    def __init__(
        self,
        oracle: Optional[AdjointOracle] = None,
        accelerator: Optional[FixedPointAccelerator] = None,
        communicator: Optional[Communicator] = None,
        krylov_criterion: non_jax_number = 100.0,
        max_condition_number: Optional[non_jax_number] = 1e12,
        nsample: Optional[int] = None,
        nbasis: Optional[int] = None,
        npt: Optional[int] = None,
        nvar: Optional[int] = None,
        npt_domain: int = 0,
    ):
        self.oracle = oracle
        self.accelerator: FixedPointAccelerator = (
            accelerator if accelerator is not None else PlainFixedPoint()
        )
        self.communicator: Communicator = (
            communicator if communicator is not None else SerialCommunicator()
        )
        self.krylov_criterion = krylov_criterion
        self.max_condition_number = max_condition_number

        self._config: Optional[SubspaceConfig] = None
        self._owned: slice = slice(None)
        self._history: Optional[HistoryWindow] = None
        self._basis: Optional[SubspaceBasis] = None
        self._projection: Optional[ProjectionState] = None
        self._newton: Optional[NewtonOperator] = None
        self._work: Optional[Float[Array, " n"]] = None
        self._stable_previous: Optional[Float[Array, " n"]] = None
        self._result: Optional[Float[Array, " n"]] = None
        self._shape: Tuple[int, ...] = ()

        if nsample is not None:
            if nbasis is None or npt is None or nvar is None:
                msg = (
                    f"Invalid Newton update parameters: nsample={nsample} given "
                    f"without nbasis={nbasis}, npt={npt} or nvar={nvar}."
                )
                raise ValueError(msg)
            self.resize(nsample, nbasis, npt, nvar, npt_domain)

    def resize(
        self,
        nsample: int,
        nbasis: int,
        npt: int,
        nvar: int,
        npt_domain: int = 0,
    ) -> None:
        """
        Description
        -----------
        Allocate all buffers. Any previous state is discarded.

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

        Raises
        ------
        - `ValueError`:
            If `npt_domain > npt` or `nsample < 2`.
        """
        config: SubspaceConfig = make_subspace_config(
            int(nsample),
            int(nbasis),
            int(npt),
            int(nvar),
            npt_domain=int(npt_domain),
            krylov_criterion=self.krylov_criterion,
            max_condition_number=self.max_condition_number,
        )
        size: int = config.size
        self._config = config
        self._owned = owned_slice(config.owned_size)
        self._shape = (config.npt, config.nvar)
        self._history = make_history_window(config.nsample, size)
        self._basis = make_subspace_basis(config.nbasis, size)
        self._projection = make_projection_state(config.nbasis, size)
        self._newton = make_newton_operator(config.nbasis, size)
        self._stable_previous = None
        self._work = None
        self._result = None
        self.accelerator.resize(size, self._owned, self.communicator)

    def _require_resized(self) -> None:
        if self._config is None:
            raise RuntimeError("NewtonUpdateOnSubspace is not sized; call resize() first.")

    def size(self) -> int:
        """Capacity of the subspace basis."""
        self._require_resized()
        return self._config.nbasis

    def reset(self) -> None:
        """
        Description
        -----------
        Discard the history and the basis progress, keeping the most recent
        sample and all storage.
        """
        self._require_resized()
        self._history = history_reset(self._history)
        self._basis = SubspaceBasis(
            vectors=self._basis.vectors,
            active=jnp.zeros_like(self._basis.active),
        )
        self._projection = make_projection_state(
            self._config.nbasis, self._config.size, self._projection.projected.dtype
        )
        self._newton = make_newton_operator(
            self._config.nbasis, self._config.size, self._newton.inverse.dtype
        )
        self.accelerator.reset()

    @property
    def config(self) -> Optional[SubspaceConfig]:
        return self._config

    @property
    def history(self) -> Optional[HistoryWindow]:
        return self._history

    @property
    def basis(self) -> Optional[SubspaceBasis]:
        return self._basis

    @property
    def projection(self) -> Optional[ProjectionState]:
        return self._projection

    @property
    def newton_operator(self) -> Optional[NewtonOperator]:
        return self._newton

    @property
    def active_basis(self) -> int:
        """Number of accepted basis vectors (iBasis)."""
        self._require_resized()
        return int(self._basis.active)

    @property
    def projected_solution(self) -> Float[Array, "npt nvar"]:
        """Subspace part p of the last corrected iterate."""
        self._require_resized()
        return jnp.reshape(self._projection.projected, self._shape)

    def store(
        self,
        work: Float[Array, "..."],
    ) -> None:
        """
        Description
        -----------
        Load the raw iterate to be corrected by the next `compute`.

        Parameters
        ----------
        - `work` (Float[Array, "..."]):
            Uncorrected solution with `npt * nvar` entries.
        """
        self._require_resized()
        work = jnp.asarray(work)
        if work.size != self._config.size:
            msg = (
                f"Iterate has {work.size} entries, expected "
                f"npt * nvar = {self._config.size}."
            )
            raise ValueError(msg)
        self._shape = work.shape
        self._work = jnp.ravel(work).astype(self._history.samples.dtype)

    def insert_sample(
        self,
        delta: Float[Array, "..."],
    ) -> None:
        """Append a delta to the history window directly."""
        self._require_resized()
        flat: Float[Array, " n"] = jnp.ravel(jnp.asarray(delta))
        self._history = history_insert(self._history, flat)

    def check_basis(
        self,
        krylov_criterion: Optional[non_jax_number] = None,
    ) -> bool:
        """
        Description
        -----------
        Check for a new basis vector and append it to the basis.

        Parameters
        ----------
        - `krylov_criterion` (Optional[non_jax_number]):
            Threshold on the first Krylov quotient. Default is the
            configured value.

        Returns
        -------
        - `grew` (bool):
            Whether the basis grew. If so, `compute_projected_jacobian`
            must follow before the next `compute`.
        """
        self._require_resized()
        threshold: non_jax_number = (
            self._config.krylov_criterion if krylov_criterion is None else krylov_criterion
        )
        self._basis, grew = basis_builder.check_basis(
            self._history, self._basis, threshold, self._owned, self.communicator
        )
        return grew

    def compute_projected_jacobian(
        self,
        input_indices: Optional[index_array] = None,
        output_indices: Optional[index_array] = None,
    ) -> NewtonOperator:
        """
        Description
        -----------
        Compute the projected Jacobian and the Newton operator for the
        current basis and restart the base accelerator. To be used directly
        after the basis grew.

        Parameters
        ----------
        - `input_indices` (Optional[index_array]):
            Oracle input location of every solution entry.
        - `output_indices` (Optional[index_array]):
            Oracle output location of every solution entry.

        Returns
        -------
        - `operator` (NewtonOperator):
            The new Newton operator.
        """
        self._require_resized()
        if self.oracle is None:
            logger.warning(
                "No differentiation oracle available, Newton operator for %d basis "
                "vectors stays the identity",
                int(self._basis.active),
            )
        else:
            self._newton = projector.compute_projected_jacobian(
                self._basis,
                self.oracle,
                self._owned,
                self.communicator,
                input_indices=input_indices,
                output_indices=output_indices,
                max_condition_number=self._config.max_condition_number,
            )
        # the stable part changes meaning once the basis grows
        self.accelerator.resize(self._config.size, self._owned, self.communicator)
        return self._newton

    def _project_onto_subspace(self) -> None:
        """Save p_R to pn_R, then project the raw iterate onto the basis."""
        coefficients: Float[Array, " nbasis"] = project_onto_basis(
            self._basis.vectors,
            self._basis.active,
            self._work,
            self._owned,
            self.communicator,
        )
        self._projection = ProjectionState(
            coefficients=coefficients,
            previous=self._projection.coefficients,
            projected=reconstruct_from_basis(self._basis.vectors, coefficients),
            basis_size=self._projection.basis_size,
        )

    def _update_projected_solution(self) -> None:
        """Newton step on the subspace coordinates (Eq. 5.6 of Shroff & Keller)."""
        state: ProjectionState = self._projection
        previous: Float[Array, " nbasis"] = state.previous
        basis_size: Integer[Array, ""] = state.basis_size
        if int(self._basis.active) > int(state.basis_size):
            previous = state.coefficients
            basis_size = self._basis.active
        coefficients: Float[Array, " nbasis"] = newton_coefficients(
            state.coefficients, previous, self._newton.inverse
        )
        self._projection = ProjectionState(
            coefficients=coefficients,
            previous=previous,
            projected=reconstruct_from_basis(self._basis.vectors, coefficients),
            basis_size=basis_size,
        )

    def compute(
        self,
        work: Optional[Float[Array, "..."]] = None,
        update_basis: bool = True,
        input_indices: Optional[index_array] = None,
        output_indices: Optional[index_array] = None,
    ) -> Float[Array, "..."]:
        """
        Description
        -----------
        Compute and return the corrected iterate.

        Parameters
        ----------
        - `work` (Optional[Float[Array, "..."]]):
            Raw iterate. If None, the one loaded by `store` is used.
        - `update_basis` (bool):
            Whether to check for basis growth after the correction, and
            project the Jacobian when it grew. Default True.
        - `input_indices` (Optional[index_array]):
            Oracle input locations, forwarded on basis growth.
        - `output_indices` (Optional[index_array]):
            Oracle output locations, forwarded on basis growth.

        Returns
        -------
        - `corrected` (Float[Array, "..."]):
            Corrected iterate in the shape of the raw iterate.

        Flow
        ----
        1. Project the raw iterate onto the basis and remove that part
        2. Store the delta of the stable part in the history (none on the
           first call)
        3. Let the base accelerator process the stable part
        4. Newton step on the subspace coordinates
        5. Recombine stable and subspace parts
        6. Check for basis growth, project the Jacobian and restart the
           base accelerator when it grew
        """
        self._require_resized()
        if work is not None:
            self.store(work)
        if self._work is None:
            raise RuntimeError("No iterate stored; call store() first.")

        active: int = int(self._basis.active)
        stable_input: Float[Array, " n"]
        if active > 0:
            self._project_onto_subspace()
            stable_input = self._work - self._projection.projected
        else:
            self._projection = self._projection._replace(
                projected=jnp.zeros_like(self._projection.projected)
            )
            stable_input = self._work

        # the first iterate has no predecessor and contributes no delta
        if self._stable_previous is not None:
            self._history = history_insert(self._history, stable_input - self._stable_previous)
        self._stable_previous = stable_input

        self.accelerator.store(stable_input)
        stable: Float[Array, " n"] = self.accelerator.compute()

        corrected: Float[Array, " n"]
        if active > 0:
            self._update_projected_solution()
            corrected = stable + self._projection.projected
        else:
            corrected = stable
        self._result = jnp.reshape(corrected, self._shape)

        if update_basis and self.check_basis():
            self.compute_projected_jacobian(input_indices, output_indices)

        return self._result

    def fp_result(self) -> Float[Array, "..."]:
        """Corrected iterate of the last `compute`."""
        if self._result is None:
            raise RuntimeError("No result available; call compute() first.")
        return self._result
