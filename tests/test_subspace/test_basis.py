"""Tests for the Krylov criterion and basis growth."""

import chex
import jax
import jax.numpy as jnp
import pytest
from absl.testing import parameterized

jax.config.update("jax_enable_x64", True)

from rpmax.parallel.communicators import SerialCommunicator
from rpmax.subspace.basis import (
    check_basis,
    krylov_criterion_met,
    krylov_quotients,
    orthonormalize,
    window_diagonal,
    window_r_factor,
)
from rpmax.subspace.history import history_insert
from rpmax.subspace.subspace_types import (
    SubspaceBasis,
    make_history_window,
    make_subspace_basis,
)


def _window(deltas: jnp.ndarray, capacity: int):
    window = make_history_window(capacity, deltas.shape[1], jnp.float64)
    for delta in deltas:
        window = history_insert(window, delta)
    return window


class TestKrylovQuotients(chex.TestCase):
    @chex.variants(with_jit=True, without_jit=True)
    def test_ratio(self) -> None:
        var_quotients = self.variant(krylov_quotients)
        quotients = var_quotients(jnp.array([1.0, 0.01]))
        chex.assert_trees_all_close(quotients, jnp.array([100.0]), rtol=1e-12)

    @chex.variants(with_jit=True, without_jit=True)
    def test_signs_are_ignored(self) -> None:
        var_quotients = self.variant(krylov_quotients)
        quotients = var_quotients(jnp.array([-2.0, 0.5, -0.25]))
        chex.assert_trees_all_close(quotients, jnp.array([4.0, 2.0]))

    def test_zero_denominator(self) -> None:
        """A zero diagonal entry leaves the quotient at zero."""
        quotients = krylov_quotients(jnp.array([1.0, 0.0, 3.0]))
        chex.assert_trees_all_close(quotients, jnp.array([0.0, 0.0]))
        assert not bool(jnp.any(jnp.isnan(quotients)))

    @parameterized.parameters(
        {"quotient": 100.0, "threshold": 50.0, "expected": True},
        {"quotient": 100.0, "threshold": 500.0, "expected": False},
        {"quotient": -100.0, "threshold": 50.0, "expected": True},
        {"quotient": float("nan"), "threshold": 50.0, "expected": False},
        {"quotient": float("nan"), "threshold": -1.0, "expected": False},
    )
    def test_criterion(self, quotient: float, threshold: float, expected: bool) -> None:
        assert bool(krylov_criterion_met(jnp.array(quotient), threshold)) == expected


class TestWindowFactor(chex.TestCase):
    def test_tall_window(self) -> None:
        """Diagonal magnitudes equal the norms of orthogonal deltas."""
        samples = jnp.array([[2.0, 0.0, 0.0], [0.0, 0.5, 0.0]])
        r_factor = window_r_factor(samples, slice(None), SerialCommunicator())
        chex.assert_shape(r_factor, (2, 2))
        chex.assert_trees_all_close(
            jnp.abs(window_diagonal(r_factor)), jnp.array([2.0, 0.5]), atol=1e-12
        )

    def test_wide_window(self) -> None:
        """More deltas than entries read trailing values from the last row."""
        samples = jnp.array([[1.0], [0.01]])
        r_factor = window_r_factor(samples, slice(None), SerialCommunicator())
        chex.assert_shape(r_factor, (1, 2))
        chex.assert_trees_all_close(
            jnp.abs(window_diagonal(r_factor)), jnp.array([1.0, 0.01]), atol=1e-12
        )

    def test_owned_rows_only(self) -> None:
        """Halo entries do not enter the factorization."""
        samples = jnp.array([[3.0, 100.0], [0.0, -50.0]])
        r_factor = window_r_factor(samples, slice(0, 1), SerialCommunicator())
        chex.assert_trees_all_close(
            jnp.abs(window_diagonal(r_factor)), jnp.array([3.0, 0.0]), atol=1e-12
        )


class TestOrthonormalize(chex.TestCase):
    def test_removes_existing_directions(self) -> None:
        vectors = jnp.array([[1.0, 0.0, 0.0, 0.0], [0.0, 0.0, 0.0, 0.0]])
        unit_vector, norm = orthonormalize(
            jnp.array([2.0, 2.0, 0.0, 0.0]), vectors, 1, slice(None), SerialCommunicator()
        )
        chex.assert_trees_all_close(unit_vector, jnp.array([0.0, 1.0, 0.0, 0.0]), atol=1e-12)
        chex.assert_trees_all_close(norm, 2.0)

    def test_ignores_reserve_slots(self) -> None:
        vectors = jnp.array([[1.0, 0.0], [0.0, 1.0]])
        unit_vector, _ = orthonormalize(
            jnp.array([3.0, 4.0]), vectors, 0, slice(None), SerialCommunicator()
        )
        chex.assert_trees_all_close(unit_vector, jnp.array([0.6, 0.8]))


class TestCheckBasis(chex.TestCase):
    @parameterized.parameters(
        {"threshold": 50.0, "expected_active": 1},
        {"threshold": 500.0, "expected_active": 0},
    )
    def test_scalar_scenario(self, threshold: float, expected_active: int) -> None:
        """Window [1.0, 0.01] has quotient 100."""
        window = _window(jnp.array([[1.0], [0.01]]), 2)
        basis = make_subspace_basis(1, 1, jnp.float64)
        new_basis, grew = check_basis(window, basis, threshold, slice(None), SerialCommunicator())
        assert grew == bool(expected_active)
        assert int(new_basis.active) == expected_active
        if expected_active:
            chex.assert_trees_all_close(jnp.abs(new_basis.vectors[0]), jnp.array([1.0]))

    def test_window_not_full(self) -> None:
        window = _window(jnp.array([[1.0, 0.0]]), 3)
        basis = make_subspace_basis(2, 2, jnp.float64)
        new_basis, grew = check_basis(window, basis, 0.0, slice(None), SerialCommunicator())
        assert not grew
        assert int(new_basis.active) == 0

    def test_basis_at_capacity(self) -> None:
        window = _window(jnp.array([[1.0, 0.0], [0.0, 1e-6]]), 2)
        basis = SubspaceBasis(vectors=jnp.array([[0.0, 1.0]]), active=jnp.array(1, dtype=jnp.int32))
        new_basis, grew = check_basis(window, basis, 10.0, slice(None), SerialCommunicator())
        assert not grew
        chex.assert_trees_all_equal(new_basis.vectors, basis.vectors)

    def test_appends_orthonormal_vector(self) -> None:
        """A dominant direction is orthonormalized against the active basis."""
        direction = jnp.array([1.0, 1.0, 0.0, 0.0])
        window = _window(
            jnp.stack([direction, 0.001 * direction + jnp.array([0.0, 0.0, 1e-6, 0.0])]), 2
        )
        basis = SubspaceBasis(
            vectors=jnp.array([[1.0, 0.0, 0.0, 0.0], [0.0, 0.0, 0.0, 0.0]]),
            active=jnp.array(1, dtype=jnp.int32),
        )
        new_basis, grew = check_basis(window, basis, 100.0, slice(None), SerialCommunicator())
        assert grew
        assert int(new_basis.active) == 2
        chex.assert_trees_all_close(
            jnp.abs(new_basis.vectors[1]), jnp.array([0.0, 1.0, 0.0, 0.0]), atol=1e-12
        )
        gram = new_basis.vectors @ new_basis.vectors.T
        chex.assert_trees_all_close(gram, jnp.eye(2), atol=1e-12)

    def test_degenerate_candidate_is_rejected(self) -> None:
        """A candidate inside the current span passes the criterion but is not appended."""
        e0 = jnp.array([1.0, 0.0, 0.0])
        window = _window(jnp.stack([e0, 0.001 * e0 + jnp.array([0.0, 1e-6, 0.0])]), 2)
        basis = SubspaceBasis(
            vectors=jnp.array([[1.0, 0.0, 0.0], [0.0, 0.0, 0.0]]),
            active=jnp.array(1, dtype=jnp.int32),
        )
        new_basis, grew = check_basis(window, basis, 100.0, slice(None), SerialCommunicator())
        assert not grew
        assert int(new_basis.active) == 1
        assert bool(jnp.all(jnp.isfinite(new_basis.vectors)))

    def test_zero_window_never_grows(self) -> None:
        window = _window(jnp.zeros((2, 3)), 2)
        basis = make_subspace_basis(2, 3, jnp.float64)
        new_basis, grew = check_basis(window, basis, 0.0, slice(None), SerialCommunicator())
        assert not grew
        assert int(new_basis.active) == 0


if __name__ == "__main__":
    pytest.main([__file__])
