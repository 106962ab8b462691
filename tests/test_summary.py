"""
Test for the iteration summaries.

@author: pyeki developers
"""

import numpy as np
import pytest

from pyeki import EnsembleKalmanInversion
from pyeki.parameters import FreeParameters, LogNormalPrior, NormalPrior
from pyeki.summary import IterationSummary, eki_objective

A = np.random.default_rng(2023).normal(size=(6, 2))
THETA_TRUE = np.array([0.8, -0.4])


def linear_forward_map(X: np.ndarray) -> np.ndarray:
    return A @ X


@pytest.fixture
def eki() -> EnsembleKalmanInversion:
    return EnsembleKalmanInversion(
        A @ THETA_TRUE,
        linear_forward_map,
        unconstrained_parameters=np.random.default_rng(7).normal(size=(2, 30)),
        noise_covariance=0.01,
        observation_channels=[4, 2],
        random_state=3,
    )


def test_summaries_clock(eki) -> None:
    eki.iterate(iterations=2, pseudo_dt=0.5)
    eki.iterate(pseudo_dt=0.25)

    summaries = eki.iteration_summaries
    assert [s.iteration for s in summaries] == [0, 1, 2, 3]
    assert [s.pseudo_dt for s in summaries] == [0.0, 0.5, 0.5, 0.25]
    np.testing.assert_allclose([s.pseudotime for s in summaries], [0, 0.5, 1.0, 1.25])
    np.testing.assert_allclose(eki.pseudotime, 1.25)


def test_summary_statistics(eki) -> None:
    summary = eki.iteration_summaries[0]
    X = eki.unconstrained_parameters
    G = eki.forward_map_output

    assert summary.parameter_names == ("theta_0", "theta_1")
    np.testing.assert_allclose(summary.parameters, X)
    np.testing.assert_allclose(summary.ensemble_mean, np.mean(X, axis=1))
    np.testing.assert_allclose(summary.ensemble_cov, np.cov(X))
    np.testing.assert_allclose(summary.ensemble_var, np.var(X, axis=1, ddof=1))
    np.testing.assert_allclose(
        summary.unconstrained_ensemble_var, np.var(X, axis=1, ddof=1)
    )

    # Per channel mean square errors
    residuals = G - eki.observations[:, None]
    assert summary.mean_square_errors.shape == (2, 30)
    np.testing.assert_allclose(
        summary.mean_square_errors[0], np.mean(residuals[:4] ** 2, axis=0)
    )
    np.testing.assert_allclose(
        summary.mean_square_errors[1], np.mean(residuals[4:] ** 2, axis=0)
    )

    # Data misfit only without priors
    assert summary.objective_values.shape == (30, 2)
    np.testing.assert_allclose(
        summary.objective_values[:, 0], 0.5 * np.sum(residuals**2, axis=0) / 0.01
    )
    np.testing.assert_allclose(summary.objective_values[:, 1], 0.0)
    np.testing.assert_allclose(
        summary.total_objective_values, summary.objective_values[:, 0]
    )


def test_summary_is_read_only(eki) -> None:
    summary = eki.iteration_summaries[0]
    with pytest.raises(ValueError):
        summary.unconstrained_parameters[0, 0] = 1.0
    with pytest.raises(ValueError):
        summary.objective_values[0, 0] = 1.0
    with pytest.raises(AttributeError):
        summary.iteration = 5  # type: ignore

    # The summary does not follow the inversion
    X = summary.unconstrained_parameters.copy()
    eki.iterate()
    np.testing.assert_equal(eki.iteration_summaries[0].unconstrained_parameters, X)


def test_summary_with_free_parameters() -> None:
    free_parameters = FreeParameters(
        {"Cᴷ": LogNormalPrior(0.0, 0.5), "Cᴮ": NormalPrior(1.0, 2.0)}
    )
    X = free_parameters.sample(40, random_state=5)
    eki = EnsembleKalmanInversion(
        A @ THETA_TRUE,
        linear_forward_map,
        free_parameters=free_parameters,
        unconstrained_parameters=X,
        noise_covariance=0.01,
    )
    summary = eki.iteration_summaries[0]

    assert summary.parameter_names == ("Cᴷ", "Cᴮ")
    np.testing.assert_allclose(summary.parameters[0], np.exp(X[0]))
    np.testing.assert_allclose(summary.parameters[1], X[1])

    mean = np.mean(X, axis=1)
    np.testing.assert_allclose(summary.unconstrained_ensemble_mean, mean)
    np.testing.assert_allclose(summary.ensemble_mean, [np.exp(mean[0]), mean[1]])

    J = np.diag([np.exp(mean[0]), 1.0])
    np.testing.assert_allclose(summary.ensemble_cov, J @ np.cov(X) @ J)
    np.testing.assert_allclose(summary.unconstrained_ensemble_cov, np.cov(X))

    # Prior term
    np.testing.assert_allclose(
        summary.objective_values[:, 1],
        0.5 * ((X[0] / 0.5) ** 2 + ((X[1] - 1.0) / 2.0) ** 2),
    )
    np.testing.assert_allclose(
        eki_objective(eki, X, eki.forward_map_output), summary.objective_values
    )

    assert summary.as_dict() == {
        "Cᴷ": pytest.approx(np.exp(mean[0])),
        "Cᴮ": pytest.approx(mean[1]),
    }
    assert summary.as_dict(member=3) == {
        "Cᴷ": pytest.approx(np.exp(X[0, 3])),
        "Cᴮ": pytest.approx(X[1, 3]),
    }


def test_summary_explicit_pseudo_dt(eki) -> None:
    summary = IterationSummary(
        eki, eki.unconstrained_parameters, eki.forward_map_output, pseudo_dt=0.3
    )
    assert summary.pseudo_dt == 0.3


def test_summary_repr(eki) -> None:
    text = repr(eki.iteration_summaries[0])
    assert text.startswith("IterationSummary(iteration=0")
    assert "theta_0=" in text
    assert "best particle objective" in text


def test_summary_repr_all_failed() -> None:
    eki = EnsembleKalmanInversion(
        np.zeros(3),
        lambda X: np.full((3, X.shape[1]), np.nan),
        unconstrained_parameters=np.random.default_rng(0).normal(size=(2, 5)),
        resampler=None,
    )
    assert "best particle objective: nan" in repr(eki.iteration_summaries[0])


@pytest.mark.parametrize(
    "name",
    [
        name
        for name, value in vars(IterationSummary).items()
        if isinstance(value, property)
    ],
)
def test_summary_properties_are_documented(name) -> None:
    assert getattr(IterationSummary, name).__doc__
