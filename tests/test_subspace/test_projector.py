"""Tests for the projected Jacobian and the Newton operator."""

import chex
import jax
import jax.numpy as jnp
import pytest
from absl.testing import parameterized

jax.config.update("jax_enable_x64", True)

from rpmax.jacobian.oracle import AdjointOracle
from rpmax.parallel.communicators import SerialCommunicator
from rpmax.subspace.projector import (
    active_condition_number,
    compute_projected_jacobian,
    newton_inverse_matrix,
    projected_jacobian_matrix,
)
from rpmax.subspace.subspace_types import SubspaceBasis


def _basis(vectors: jnp.ndarray, active: int) -> SubspaceBasis:
    return SubspaceBasis(vectors=vectors, active=jnp.array(active, dtype=jnp.int32))


class TestNewtonInverse(chex.TestCase):
    def setUp(self) -> None:
        super().setUp()
        key = jax.random.PRNGKey(0)
        self.projected_jacobian = 0.3 * jax.random.normal(key, (3, 3), dtype=jnp.float64)

    @chex.variants(with_jit=True, without_jit=True)
    def test_inverts_full_block(self) -> None:
        """N (I - J) is the identity when every vector is active."""
        var_inverse = self.variant(newton_inverse_matrix)
        inverse = var_inverse(self.projected_jacobian, 3)
        product = inverse @ (jnp.eye(3) - self.projected_jacobian)
        chex.assert_trees_all_close(product, jnp.eye(3), atol=1e-12)

    @chex.variants(with_jit=True, without_jit=True)
    def test_identity_outside_active_block(self) -> None:
        var_inverse = self.variant(newton_inverse_matrix)
        inverse = var_inverse(self.projected_jacobian, 1)
        expected = jnp.eye(3).at[0, 0].set(1.0 / (1.0 - self.projected_jacobian[0, 0]))
        chex.assert_trees_all_close(inverse, expected, atol=1e-12)

    def test_empty_basis(self) -> None:
        inverse = newton_inverse_matrix(self.projected_jacobian, 0)
        chex.assert_trees_all_close(inverse, jnp.eye(3))

    def test_condition_number(self) -> None:
        projected_jacobian = jnp.diag(jnp.array([0.5, 0.9]))
        condition = active_condition_number(projected_jacobian, 2)
        chex.assert_trees_all_close(condition, 5.0, rtol=1e-10)


class TestProjectedJacobianMatrix(chex.TestCase):
    def test_masks_inactive_entries(self) -> None:
        vectors = jnp.eye(3, 4)
        derivatives = jnp.ones((3, 4))
        projected_jacobian = projected_jacobian_matrix(
            vectors, derivatives, 2, slice(None), SerialCommunicator()
        )
        expected = jnp.zeros((3, 3)).at[:2, :2].set(1.0)
        chex.assert_trees_all_close(projected_jacobian, expected)

    def test_owned_entries_only(self) -> None:
        vectors = jnp.array([[1.0, 0.0, 1.0]])
        derivatives = jnp.array([[2.0, 0.0, 7.0]])
        projected_jacobian = projected_jacobian_matrix(
            vectors, derivatives, 1, slice(0, 2), SerialCommunicator()
        )
        chex.assert_trees_all_close(projected_jacobian, jnp.array([[2.0]]))


class TestComputeProjectedJacobian(chex.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.matrix = jnp.array(
            [
                [0.9, 0.3, 0.0, 0.1],
                [-0.2, 0.5, 0.4, 0.0],
                [0.0, 0.1, 0.2, 0.3],
                [0.05, 0.0, -0.1, 0.1],
            ]
        )
        self.offset = jnp.ones(4)
        self.oracle = AdjointOracle(
            lambda x: self.matrix @ x + self.offset, point=jnp.zeros(4)
        )
        angle = 0.3
        self.vectors = jnp.array(
            [
                [jnp.cos(angle), jnp.sin(angle), 0.0, 0.0],
                [-jnp.sin(angle), jnp.cos(angle), 0.0, 0.0],
                [0.0, 0.0, 0.0, 0.0],
            ]
        )

    def test_matches_dense_projection(self) -> None:
        """R[i] · (Jᵀ R[j]) for a linear map."""
        operator = compute_projected_jacobian(
            _basis(self.vectors, 2), self.oracle, slice(None), SerialCommunicator()
        )
        expected_derivatives = (self.vectors @ self.matrix).at[2].set(0.0)
        chex.assert_trees_all_close(operator.derivatives, expected_derivatives, atol=1e-12)
        expected = self.vectors @ expected_derivatives.T
        chex.assert_trees_all_close(operator.projected_jacobian, expected, atol=1e-12)
        block = jnp.eye(2) - operator.projected_jacobian[:2, :2]
        chex.assert_trees_all_close(operator.inverse[:2, :2] @ block, jnp.eye(2), atol=1e-12)
        chex.assert_trees_all_close(operator.inverse[2], jnp.array([0.0, 0.0, 1.0]))

    def test_nonlinear_map_uses_recorded_point(self) -> None:
        def fixed_point_map(x):
            return 0.5 * jnp.sin(x) + 0.1 * x**2

        point = jnp.array([0.3, -0.7, 1.1])
        oracle = AdjointOracle(fixed_point_map, point=point)
        vectors = jnp.array([[0.6, 0.8, 0.0]])
        operator = compute_projected_jacobian(
            _basis(vectors, 1), oracle, slice(None), SerialCommunicator()
        )
        jacobian = jax.jacobian(fixed_point_map)(point)
        expected = vectors @ jacobian.T @ vectors.T
        chex.assert_trees_all_close(operator.projected_jacobian, expected, atol=1e-12)

    def test_permuted_oracle_layout(self) -> None:
        """Index maps translate solution entries to oracle locations."""
        permutation = jnp.array([2, 0, 3, 1])

        def permuted_map(y):
            x = y[permutation]
            return jnp.zeros(4).at[permutation].set(self.matrix @ x + self.offset)

        oracle = AdjointOracle(permuted_map, point=jnp.zeros(4))
        reference = compute_projected_jacobian(
            _basis(self.vectors, 2), self.oracle, slice(None), SerialCommunicator()
        )
        operator = compute_projected_jacobian(
            _basis(self.vectors, 2),
            oracle,
            slice(None),
            SerialCommunicator(),
            input_indices=permutation,
            output_indices=permutation,
        )
        chex.assert_trees_all_close(
            operator.projected_jacobian, reference.projected_jacobian, atol=1e-12
        )

    def test_empty_basis_is_identity(self) -> None:
        operator = compute_projected_jacobian(
            _basis(self.vectors, 0), self.oracle, slice(None), SerialCommunicator()
        )
        chex.assert_trees_all_close(operator.inverse, jnp.eye(3))
        chex.assert_trees_all_close(operator.projected_jacobian, jnp.zeros((3, 3)))

    def test_singular_system_falls_back_to_identity(self) -> None:
        oracle = AdjointOracle(lambda x: jnp.diag(jnp.array([1.0, 0.5, 0.2])) @ x, point=jnp.ones(3))
        vectors = jnp.array([[1.0, 0.0, 0.0]])
        with self.assertLogs("rpmax.subspace.projector", level="WARNING"):
            operator = compute_projected_jacobian(
                _basis(vectors, 1), oracle, slice(None), SerialCommunicator()
            )
        chex.assert_trees_all_close(operator.inverse, jnp.eye(1))
        assert not bool(jnp.isfinite(operator.condition_number))

    @parameterized.parameters(
        {"max_condition_number": 1e12, "falls_back": True},
        {"max_condition_number": 1e16, "falls_back": False},
        {"max_condition_number": None, "falls_back": False},
    )
    def test_condition_guard(self, max_condition_number, falls_back: bool) -> None:
        diagonal = jnp.array([1.0 - 1e-14, 0.5, 0.2])
        oracle = AdjointOracle(lambda x: diagonal * x, point=jnp.ones(3))
        vectors = jnp.eye(2, 3)
        operator = compute_projected_jacobian(
            _basis(vectors, 2),
            oracle,
            slice(None),
            SerialCommunicator(),
            max_condition_number=max_condition_number,
        )
        assert float(operator.condition_number) > 1e12
        if falls_back:
            chex.assert_trees_all_close(operator.inverse, jnp.eye(2))
        else:
            assert float(operator.inverse[0, 0]) > 1e12
            chex.assert_trees_all_close(operator.inverse[1, 1], 2.0)


if __name__ == "__main__":
    pytest.main([__file__])
