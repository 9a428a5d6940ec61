"""
Module: rpmax.subspace
----------------------
Newton updates on the slow/unstable subspace of a fixed-point iteration.

Submodules
----------
- `subspace_types`:
    PyTree data structures, configuration and their factory functions
- `history`:
    Circular window of iterate deltas
- `basis`:
    QR-based Krylov criterion and Gram-Schmidt basis growth
- `projector`:
    Projected Jacobian through adjoint passes and the Newton operator
- `corrector`:
    Per-iteration driver combining the stable and subspace updates
"""

from .subspace_types import (
    HistoryWindow,
    NewtonOperator,
    ProjectionState,
    SubspaceBasis,
    SubspaceConfig,
    index_array,
    make_history_window,
    make_newton_operator,
    make_projection_state,
    make_subspace_basis,
    make_subspace_config,
    non_jax_number,
    scalar_float,
    scalar_int,
)
from .history import (
    history_insert,
    history_is_full,
    history_latest,
    history_reset,
    history_samples,
)
from .basis import (
    check_basis,
    krylov_criterion_met,
    krylov_quotients,
    orthonormalize,
    window_diagonal,
    window_r_factor,
)
from .projector import (
    active_condition_number,
    adjoint_basis_products,
    compute_projected_jacobian,
    newton_inverse_matrix,
    projected_jacobian_matrix,
)
from .corrector import (
    NewtonUpdateOnSubspace,
    newton_coefficients,
    project_onto_basis,
    reconstruct_from_basis,
)

__all__: list[str] = [
    "HistoryWindow",
    "NewtonOperator",
    "ProjectionState",
    "SubspaceBasis",
    "SubspaceConfig",
    "index_array",
    "make_history_window",
    "make_newton_operator",
    "make_projection_state",
    "make_subspace_basis",
    "make_subspace_config",
    "non_jax_number",
    "scalar_float",
    "scalar_int",
    "history_insert",
    "history_is_full",
    "history_latest",
    "history_reset",
    "history_samples",
    "check_basis",
    "krylov_criterion_met",
    "krylov_quotients",
    "orthonormalize",
    "window_diagonal",
    "window_r_factor",
    "active_condition_number",
    "adjoint_basis_products",
    "compute_projected_jacobian",
    "newton_inverse_matrix",
    "projected_jacobian_matrix",
    "NewtonUpdateOnSubspace",
    "newton_coefficients",
    "project_onto_basis",
    "reconstruct_from_basis",
]
