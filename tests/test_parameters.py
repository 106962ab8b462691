"""
Test for the free parameters and their priors.

@author: pyeki developers
"""

from contextlib import contextmanager

import numpy as np
import pytest
from scipy.stats import lognorm

from pyeki.parameters import (
    FreeParameters,
    LogNormalPrior,
    NormalPrior,
    ScaledLogitNormalPrior,
    lognormal_with_mean_std,
)


@contextmanager
def does_not_raise():
    yield


@pytest.fixture
def free_parameters() -> FreeParameters:
    return FreeParameters(
        {
            "Cᴷu": LogNormalPrior(mu=0.0, sigma=0.5),
            "Cᴰ": ScaledLogitNormalPrior(lower=0.0, upper=4.0, mu=0.0, sigma=1.0),
            "offset": NormalPrior(mu=1.0, sigma=2.0),
        }
    )


@pytest.mark.parametrize(
    "prior",
    [
        NormalPrior(0.5, 2.0),
        LogNormalPrior(0.0, 1.0),
        ScaledLogitNormalPrior(-1.0, 3.0, 0.0, 1.0),
    ],
)
def test_transforms_round_trip_and_derivative(prior) -> None:
    x = np.linspace(-2.0, 2.0, 9)
    np.testing.assert_allclose(
        prior.transform_to_unconstrained(prior.transform_to_constrained(x)), x
    )
    # Centered finite differences
    h = 1e-6
    np.testing.assert_allclose(
        prior.constrained_derivative(x),
        (prior.transform_to_constrained(x + h) - prior.transform_to_constrained(x - h))
        / (2 * h),
        rtol=1e-5,
    )


def test_scaled_logit_normal_bounds() -> None:
    prior = ScaledLogitNormalPrior(lower=1.0, upper=2.0)
    theta = prior.transform_to_constrained(np.array([-30.0, 0.0, 30.0]))
    assert np.all(theta >= 1.0) and np.all(theta <= 2.0)
    np.testing.assert_allclose(theta[1], 1.5)


def test_lognormal_with_mean_std() -> None:
    prior = lognormal_with_mean_std(2.0, 0.5)
    distribution = lognorm(s=prior.sigma, scale=np.exp(prior.mu))
    np.testing.assert_allclose(distribution.mean(), 2.0)
    np.testing.assert_allclose(distribution.std(), 0.5)


@pytest.mark.parametrize(
    "constructor,expected_exception",
    [
        (lambda: NormalPrior(0.0, 1.0), does_not_raise()),
        (
            lambda: NormalPrior(0.0, 0.0),
            pytest.raises(ValueError, match=r"sigma \(0.0\) should be strictly"),
        ),
        (
            lambda: ScaledLogitNormalPrior(1.0, 1.0),
            pytest.raises(ValueError, match="must be larger than the lower bound"),
        ),
        (
            lambda: lognormal_with_mean_std(-1.0, 1.0),
            pytest.raises(ValueError, match="should be strictly positive"),
        ),
        (
            lambda: FreeParameters({}),
            pytest.raises(ValueError, match="At least one free parameter"),
        ),
    ],
)
def test_priors_validation(constructor, expected_exception) -> None:
    with expected_exception:
        constructor()


def test_free_parameters(free_parameters) -> None:
    assert free_parameters.names == ["Cᴷu", "Cᴰ", "offset"]
    assert free_parameters.n_params == 3
    np.testing.assert_allclose(free_parameters.unconstrained_prior_mean, [0, 0, 1])
    np.testing.assert_allclose(
        free_parameters.unconstrained_prior_cov, np.diag([0.25, 1.0, 4.0])
    )
    assert free_parameters.unconstrained_prior("offset").std() == 2.0
    assert "FreeParameters(Cᴷu=LogNormalPrior" in repr(free_parameters)


def test_free_parameters_sample(free_parameters) -> None:
    X = free_parameters.sample(2000, random_state=1)
    assert X.shape == (3, 2000)
    np.testing.assert_allclose(np.mean(X, axis=1), [0.0, 0.0, 1.0], atol=0.15)
    np.testing.assert_allclose(np.std(X, axis=1), [0.5, 1.0, 2.0], rtol=0.1)
    np.testing.assert_equal(X, free_parameters.sample(2000, random_state=1))


def test_free_parameters_transforms(free_parameters) -> None:
    X = free_parameters.sample(10, random_state=2)
    theta = free_parameters.transform_to_constrained(X)
    assert theta.shape == (3, 10)
    np.testing.assert_allclose(theta[0], np.exp(X[0]))
    np.testing.assert_allclose(theta[2], X[2])
    assert np.all((theta[1] > 0.0) & (theta[1] < 4.0))
    np.testing.assert_allclose(free_parameters.transform_to_unconstrained(theta), X)

    # single vector
    np.testing.assert_allclose(
        free_parameters.transform_to_constrained(X[:, 0]), theta[:, 0]
    )
    assert free_parameters.to_dict(theta[:, 0]) == {
        "Cᴷu": theta[0, 0],
        "Cᴰ": theta[1, 0],
        "offset": theta[2, 0],
    }

    J = free_parameters.constrained_jacobian(X[:, 0])
    assert J.shape == (3, 3)
    np.testing.assert_allclose(np.diag(J)[0], np.exp(X[0, 0]))
    np.testing.assert_allclose(np.diag(J)[2], 1.0)
    np.testing.assert_allclose(J - np.diag(np.diag(J)), 0.0)

    with pytest.raises(ValueError, match="Expected 3 parameters"):
        free_parameters.transform_to_constrained(np.ones((2, 10)))
