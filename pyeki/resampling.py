"""
Detection and replacement of failed particles.

A particle fails when the forward map returns non-finite values for it, or
values whose norm is unreasonably large compared to the rest of the ensemble.
Failed particles are excluded from the ensemble statistics and replaced by
draws from a normal distribution fitted to the successful ones.

@author: pyeki developers
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Tuple, Union

import numpy as np

from pyeki.utils import NDArrayBool, NDArrayFloat, sample_ensemble_normal

if TYPE_CHECKING:  # pragma: no cover
    from pyeki.eki import EnsembleKalmanInversion


class FailureCondition(ABC):
    """Abstract class for particle failure conditions."""

    @abstractmethod
    def __call__(self, G: NDArrayFloat) -> NDArrayBool:
        """Return a boolean vector flagging the failed columns of `G`."""
        ...  # pragma: no cover


class NormExceedsMedian(FailureCondition):
    """
    Particle failure condition based on the forward map output norm.

    A particle is marked failed if its forward map output contains any non-finite
    value, or if its norm is larger than `minimum_relative_norm` times the median
    norm of the particles with finite output.

    Examples
    --------
    >>> G = np.array([[1.0, 1.0, np.nan, 1e12], [1.0, 1.0, 1.0, 1.0]])
    >>> NormExceedsMedian(1e9)(G)
    array([False, False,  True,  True])
    """

    __slots__ = ["_minimum_relative_norm"]

    def __init__(self, minimum_relative_norm: float = 1e9) -> None:
        """
        Initialize the instance.

        Parameters
        ----------
        minimum_relative_norm : float
            Relative norm above which a particle is considered failed.
            The default is 1e9.
        """
        if minimum_relative_norm < 0:
            raise ValueError(
                f"minimum_relative_norm ({minimum_relative_norm}) must be "
                "non-negative !"
            )
        self._minimum_relative_norm: float = float(minimum_relative_norm)

    @property
    def minimum_relative_norm(self) -> float:
        """Return the relative norm threshold. Read-only."""
        return self._minimum_relative_norm

    def __call__(self, G: NDArrayFloat) -> NDArrayBool:
        G = np.atleast_2d(G)
        is_finite = np.all(np.isfinite(G), axis=0)
        if not np.any(is_finite):
            return np.ones(G.shape[1], dtype=bool)
        norms = np.linalg.norm(np.where(np.isfinite(G), G, 0.0), axis=0)
        median_norm = np.median(norms[is_finite])
        return ~is_finite | (norms > self.minimum_relative_norm * median_norm)

    def __repr__(self) -> str:
        return f"NormExceedsMedian({self.minimum_relative_norm:.1e})"


def resample_failed_particles(
    X_new: NDArrayFloat,
    failures: NDArrayBool,
    rng: Union[np.random.Generator, np.random.RandomState],
) -> NDArrayFloat:
    """
    Replace the failed columns of an updated ensemble.

    The failed particles are drawn from the normal distribution fitted to the
    updated successful particles.

    Parameters
    ----------
    X_new : NDArrayFloat
        Updated ensemble with shape (:math:`N_{m}`, :math:`N_{e}`). Failed
        columns are ignored and overwritten.
    failures : NDArrayBool
        Boolean vector flagging the failed particles.
    rng : Union[np.random.Generator, np.random.RandomState]
        Random state.

    Returns
    -------
    NDArrayFloat
        The ensemble with resampled failed particles.
    """
    n_failures = int(np.sum(failures))
    if n_failures == 0:
        return X_new
    if n_failures == X_new.shape[1]:
        raise ValueError("All particles failed, the ensemble cannot be resampled!")
    X_out = X_new.copy()
    X_out[:, failures] = sample_ensemble_normal(X_new[:, ~failures], n_failures, rng)
    return X_out


class ResamplingDistribution(ABC):
    """Abstract class for the distribution new particles are drawn from."""

    @abstractmethod
    def sample(
        self,
        X: NDArrayFloat,
        failures: NDArrayBool,
        n_samples: int,
        rng: Union[np.random.Generator, np.random.RandomState],
    ) -> NDArrayFloat:
        """Draw `n_samples` new particles."""
        ...  # pragma: no cover


class FullEnsembleDistribution(ResamplingDistribution):
    """Normal distribution fitted to the whole ensemble, failed particles included."""

    def sample(self, X, failures, n_samples, rng) -> NDArrayFloat:
        return sample_ensemble_normal(X, n_samples, rng)

    def __repr__(self) -> str:
        return "FullEnsembleDistribution()"


class SuccessfulEnsembleDistribution(ResamplingDistribution):
    """Normal distribution fitted to the successful particles only."""

    def sample(self, X, failures, n_samples, rng) -> NDArrayFloat:
        if np.all(failures):
            raise ValueError(
                "All particles failed, cannot fit the successful ensemble distribution!"
            )
        return sample_ensemble_normal(X[:, ~failures], n_samples, rng)

    def __repr__(self) -> str:
        return "SuccessfulEnsembleDistribution()"


class Resampler:
    """
    Forward-map level resampling of failed particles.

    When the fraction of failed particles after a forward map evaluation exceeds
    `resample_failure_fraction`, new particles are drawn from `distribution` and
    evaluated until enough successful ones are found.

    Attributes
    ----------
    only_failed_particles: bool
        Whether to replace only the failed particles (True) or the whole
        ensemble (False).
    resample_failure_fraction: float
        Failure fraction above which resampling is triggered.
    distribution: ResamplingDistribution
        Distribution new particles are drawn from.
    max_search_iterations: int
        Maximum number of forward map evaluations used to find new particles.
    """

    __slots__ = [
        "only_failed_particles",
        "_resample_failure_fraction",
        "distribution",
        "max_search_iterations",
    ]

    def __init__(
        self,
        only_failed_particles: bool = True,
        resample_failure_fraction: float = 0.2,
        distribution: ResamplingDistribution = FullEnsembleDistribution(),
        max_search_iterations: int = 10,
    ) -> None:
        self.only_failed_particles: bool = only_failed_particles
        self.resample_failure_fraction = resample_failure_fraction
        self.distribution: ResamplingDistribution = distribution
        if int(max_search_iterations) < 1:
            raise ValueError("max_search_iterations must be 1 or more.")
        self.max_search_iterations: int = int(max_search_iterations)

    @property
    def resample_failure_fraction(self) -> float:
        """Return the failure fraction that triggers the resampling."""
        return self._resample_failure_fraction

    @resample_failure_fraction.setter
    def resample_failure_fraction(self, fraction: float) -> None:
        if fraction < 0 or fraction > 1:
            raise ValueError(
                f"resample_failure_fraction ({fraction}) should be in [0, 1]!"
            )
        self._resample_failure_fraction = float(fraction)

    def __repr__(self) -> str:
        return (
            f"Resampler(only_failed_particles={self.only_failed_particles}, "
            f"resample_failure_fraction={self.resample_failure_fraction}, "
            f"distribution={self.distribution!r})"
        )

    def resample(
        self, X: NDArrayFloat, G: NDArrayFloat, eki: EnsembleKalmanInversion
    ) -> Tuple[NDArrayFloat, NDArrayFloat]:
        """
        Resample the failed particles of the ensemble.

        Parameters
        ----------
        X : NDArrayFloat
            Ensemble of unconstrained parameters.
        G : NDArrayFloat
            Forward map output for `X`.
        eki : EnsembleKalmanInversion
            Calibration providing the forward map, the failure condition and
            the random state.

        Returns
        -------
        Tuple[NDArrayFloat, NDArrayFloat]
            The (possibly) new parameters and forward map output.
        """
        failures = eki.mark_failed_particles(G)
        n_failures = int(np.sum(failures))
        failure_fraction = n_failures / X.shape[1]

        if n_failures == 0 or failure_fraction <= self.resample_failure_fraction:
            return X, G

        eki.loginfo(
            f"{n_failures} particles failed ({failure_fraction:.1%}), "
            "searching for new particles..."
        )
        if self.only_failed_particles:
            n_samples = n_failures
            columns: Union[NDArrayFloat, slice] = np.flatnonzero(failures)
        else:
            n_samples = X.shape[1]
            columns = slice(None)

        found_X, found_G = self._find_successful_particles(X, failures, n_samples, eki)

        X = X.copy()
        G = G.copy()
        X[:, columns] = found_X
        G[:, columns] = found_G
        return X, G

    def _find_successful_particles(
        self,
        X: NDArrayFloat,
        failures: NDArrayBool,
        n_samples: int,
        eki: EnsembleKalmanInversion,
    ) -> Tuple[NDArrayFloat, NDArrayFloat]:
        found_X: List[NDArrayFloat] = []
        found_G: List[NDArrayFloat] = []
        n_found = 0
        for _ in range(self.max_search_iterations):
            X_sample = self.distribution.sample(X, failures, X.shape[1], eki.rng)
            G_sample = eki.evaluate_forward_map(X_sample)
            successes = ~eki.mark_failed_particles(G_sample)
            found_X.append(X_sample[:, successes])
            found_G.append(G_sample[:, successes])
            n_found += int(np.sum(successes))
            eki.loginfo(f"- Found {n_found}/{n_samples} successful particles")
            if n_found >= n_samples:
                return (
                    np.hstack(found_X)[:, :n_samples],
                    np.hstack(found_G)[:, :n_samples],
                )
        raise RuntimeError(
            f"Could not find {n_samples} successful particles after "
            f"{self.max_search_iterations} forward map evaluations!"
        )
