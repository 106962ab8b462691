"""
Test for the EKI update rules.

@author: pyeki developers
"""

from contextlib import contextmanager

import numpy as np
import pytest
import scipy as sp

from pyeki.inversion import (
    KOVACHKI_EPSILON,
    augment_forward_map_output,
    augment_noise_covariance,
    augment_observations,
    iglesias_2013_update,
    kovachki_2018_update,
    perturb_observations,
)


@contextmanager
def does_not_raise():
    yield


@pytest.fixture
def linear_problem():
    rng = np.random.default_rng(12)
    A = rng.normal(size=(4, 2))
    X = rng.normal(size=(2, 20))
    G = A @ X
    obs = A @ np.array([0.5, -1.0])
    cov_obs = 0.1 * np.eye(4)
    return X, G, obs, cov_obs


def test_iglesias_2013_update_constant_output_does_not_move() -> None:
    # No correlation between parameters and predictions -> no update
    X = np.random.default_rng(0).normal(size=(3, 10))
    G = np.ones((5, 10))
    X_new = iglesias_2013_update(
        X, G, np.zeros(5), np.eye(5), rng=np.random.RandomState(0)
    )
    np.testing.assert_allclose(X_new, X)


def test_iglesias_2013_update_deterministic(linear_problem) -> None:
    X, G, obs, cov_obs = linear_problem
    dt = 0.5
    X_new = iglesias_2013_update(X, G, obs, cov_obs, pseudo_dt=dt, is_perturbed=False)

    C_XG = np.cov(X, G, bias=True)[:2, 2:]
    C_GG = np.cov(G, bias=True)
    expected = X + C_XG @ np.linalg.inv(C_GG + cov_obs / dt) @ (obs[:, None] - G)
    np.testing.assert_allclose(X_new, expected)


def test_iglesias_2013_update_noise_mean(linear_problem) -> None:
    X, G, obs, cov_obs = linear_problem
    noise_mean = np.full(obs.size, 0.3)
    np.testing.assert_allclose(
        iglesias_2013_update(
            X, G, obs, cov_obs, is_perturbed=False, noise_mean=noise_mean
        ),
        iglesias_2013_update(X, G, obs + noise_mean, cov_obs, is_perturbed=False),
    )


def test_iglesias_2013_update_reproducible(linear_problem) -> None:
    X, G, obs, cov_obs = linear_problem
    np.testing.assert_allclose(
        iglesias_2013_update(X, G, obs, cov_obs, rng=np.random.RandomState(5)),
        iglesias_2013_update(
            X,
            G,
            obs,
            cov_obs,
            rng=np.random.RandomState(5),
            cov_obs_cholesky=sp.linalg.cholesky(cov_obs, lower=False),
        ),
    )


@pytest.mark.parametrize(
    "kwargs,expected_exception",
    [
        ({"rng": np.random.RandomState(0)}, does_not_raise()),
        ({"is_perturbed": False}, does_not_raise()),
        (
            {},
            pytest.raises(
                ValueError, match="A random state is required to perturb observations!"
            ),
        ),
    ],
)
def test_iglesias_2013_update_rng(linear_problem, kwargs, expected_exception) -> None:
    X, G, obs, cov_obs = linear_problem
    with expected_exception:
        iglesias_2013_update(X, G, obs, cov_obs, **kwargs)


def test_iglesias_2013_update_wrong_members(linear_problem) -> None:
    X, G, obs, cov_obs = linear_problem
    with pytest.raises(ValueError, match="X and G must have the same number"):
        iglesias_2013_update(X[:, :-1], G, obs, cov_obs, is_perturbed=False)


def test_perturb_observations_statistics() -> None:
    cov_obs = np.array([[2.0, 0.3], [0.3, 1.0]])
    obs = np.array([1.0, -2.0])
    dt = 0.25
    perturbed = perturb_observations(
        obs,
        sp.linalg.cholesky(cov_obs, lower=False),
        dt,
        20000,
        np.random.default_rng(3),
    )
    assert perturbed.shape == (2, 20000)
    np.testing.assert_allclose(np.mean(perturbed, axis=1), obs, atol=0.1)
    np.testing.assert_allclose(np.cov(perturbed), cov_obs / dt, rtol=0.05, atol=0.05)


def test_kovachki_2018_update(linear_problem) -> None:
    X, G, obs, cov_obs = linear_problem
    n_ensemble = X.shape[1]
    g_mean = np.mean(G, axis=1)
    cov_obs_inv = np.linalg.inv(cov_obs)

    D = np.zeros((n_ensemble, n_ensemble))
    for i in range(n_ensemble):
        for j in range(n_ensemble):
            D[i, j] = (G[:, i] - g_mean) @ cov_obs_inv @ (G[:, j] - obs)
    expected_dt = 2.0 / (np.sqrt(np.sum(D**2)) + KOVACHKI_EPSILON)

    X_new, dt = kovachki_2018_update(X, G, obs, cov_obs, initial_step_size=2.0)

    np.testing.assert_allclose(dt, expected_dt)
    np.testing.assert_allclose(X_new, X - expected_dt / n_ensemble * X @ D)


def test_tikhonov_augmentation() -> None:
    obs = np.array([1.0, 2.0, 3.0])
    cov_obs = np.eye(3) * 0.5
    prior_mean = np.array([0.0, -1.0])
    prior_cov = np.diag([4.0, 9.0])
    X = np.arange(10.0).reshape(2, 5)
    G = np.ones((3, 5))

    np.testing.assert_allclose(
        augment_observations(obs, prior_mean), [1.0, 2.0, 3.0, 0.0, -1.0]
    )
    cov = augment_noise_covariance(cov_obs, prior_cov)
    assert cov.shape == (5, 5)
    np.testing.assert_allclose(cov[:3, :3], cov_obs)
    np.testing.assert_allclose(cov[3:, 3:], prior_cov)
    np.testing.assert_allclose(cov[:3, 3:], 0.0)

    G_aug = augment_forward_map_output(G, X)
    assert G_aug.shape == (5, 5)
    np.testing.assert_allclose(G_aug[3:], X)
