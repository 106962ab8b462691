"""
Per-iteration snapshot of an ensemble Kalman inversion.

@author: pyeki developers
"""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Sequence

import numpy as np

from pyeki.utils import NDArrayFloat, get_ensemble_variance, ls_cost_function

if TYPE_CHECKING:  # pragma: no cover
    from pyeki.eki import EnsembleKalmanInversion

# pylint: disable=C0103 # Does not conform to snake_case naming style


def eki_objective(
    eki: EnsembleKalmanInversion, X: NDArrayFloat, G: NDArrayFloat
) -> NDArrayFloat:
    r"""
    Return the EKI objective of each particle, split in two terms.

    .. math::
        \Phi_{1, j} = \frac{1}{2}\left\lVert \Gamma_{y}^{-1/2}
        \left(y - g_{j}\right) \right\rVert^{2}, \quad
        \Phi_{2, j} = \frac{1}{2}\left\lVert \Gamma_{\theta}^{-1/2}
        \left(\theta_{j} - \mu_{\theta}\right) \right\rVert^{2}

    The prior term :math:`\Phi_{2}` is zero when no free parameters (priors) are
    attached to the inversion.

    Parameters
    ----------
    eki : EnsembleKalmanInversion
        The calibration providing observations, noise covariance and priors.
    X : NDArrayFloat
        Ensemble of unconstrained parameters (:math:`N_{m}`, :math:`N_{e}`).
    G : NDArrayFloat
        Forward map output (:math:`N_{obs}`, :math:`N_{e}`), not augmented.

    Returns
    -------
    NDArrayFloat
        Objective values with shape (:math:`N_{e}`, 2). Non-finite forward map
        outputs give non-finite data misfits.
    """
    objective = np.zeros((X.shape[1], 2))
    objective[:, 0] = ls_cost_function(G, eki.observations, eki.cov_obs_cholesky)
    if eki.free_parameters is not None:
        objective[:, 1] = ls_cost_function(
            X,
            eki.free_parameters.unconstrained_prior_mean,
            np.sqrt(np.diag(eki.free_parameters.unconstrained_prior_cov)),
        )
    return objective


class IterationSummary:
    """
    Immutable snapshot of the ensemble at one iteration.

    Attributes
    ----------
    parameters: NDArrayFloat
        Constrained (physical) parameters with shape (:math:`N_{m}`, :math:`N_{e}`).
    unconstrained_parameters: NDArrayFloat
        Unconstrained parameters with shape (:math:`N_{m}`, :math:`N_{e}`).
    ensemble_mean: NDArrayFloat
        Constrained transform of the unconstrained ensemble mean.
    unconstrained_ensemble_mean: NDArrayFloat
        Ensemble mean in unconstrained space.
    ensemble_cov: NDArrayFloat
        Constrained ensemble covariance, linearized around the mean.
    unconstrained_ensemble_cov: NDArrayFloat
        Ensemble covariance in unconstrained space.
    ensemble_var: NDArrayFloat
        Diagonal of `ensemble_cov`.
    unconstrained_ensemble_var: NDArrayFloat
        Diagonal of `unconstrained_ensemble_cov`.
    objective_values: NDArrayFloat
        Data misfit and prior term of each particle, shape (:math:`N_{e}`, 2).
    mean_square_errors: NDArrayFloat
        Mean square error of each observation channel for each particle, shape
        (:math:`N_{channels}`, :math:`N_{e}`).
    iteration: int
        Iteration index, 0 being the initial ensemble.
    pseudotime: float
        Cumulated pseudo time.
    pseudo_dt: float
        Pseudo time step taken to reach this iteration (0.0 for iteration 0).
    """

    __slots__ = [
        "_parameters",
        "_unconstrained_parameters",
        "_ensemble_mean",
        "_unconstrained_ensemble_mean",
        "_ensemble_cov",
        "_unconstrained_ensemble_cov",
        "_objective_values",
        "_mean_square_errors",
        "_iteration",
        "_pseudotime",
        "_pseudo_dt",
        "_parameter_names",
    ]

    def __init__(
        self,
        eki: EnsembleKalmanInversion,
        X: NDArrayFloat,
        G: NDArrayFloat,
        pseudo_dt: Optional[float] = None,
    ) -> None:
        """
        Build the summary of the ensemble `X` with forward map output `G`.

        Parameters
        ----------
        eki : EnsembleKalmanInversion
            The calibration, used for the iteration counters and transforms.
        X : NDArrayFloat
            Ensemble of unconstrained parameters.
        G : NDArrayFloat
            Forward map output for `X`.
        pseudo_dt : Optional[float]
            Step taken to reach `X`. The default is None, which reads
            `eki.pseudo_dt` for iterations above 0 and uses 0.0 otherwise.
        """
        X = np.array(X, dtype=np.float64)
        X.setflags(write=False)
        self._unconstrained_parameters: NDArrayFloat = X
        self._unconstrained_ensemble_mean: NDArrayFloat = np.mean(X, axis=1)
        self._unconstrained_ensemble_cov: NDArrayFloat = np.atleast_2d(
            np.cov(X, ddof=1)
        )

        free_parameters = eki.free_parameters
        if free_parameters is None:
            self._parameters: NDArrayFloat = X
            self._ensemble_mean: NDArrayFloat = self._unconstrained_ensemble_mean
            self._ensemble_cov: NDArrayFloat = self._unconstrained_ensemble_cov
            self._parameter_names: List[str] = [
                f"theta_{i}" for i in range(X.shape[0])
            ]
        else:
            self._parameters = free_parameters.transform_to_constrained(X)
            self._ensemble_mean = free_parameters.transform_to_constrained(
                self._unconstrained_ensemble_mean
            )
            jacobian = free_parameters.constrained_jacobian(
                self._unconstrained_ensemble_mean
            )
            self._ensemble_cov = jacobian @ self._unconstrained_ensemble_cov @ jacobian.T
            self._parameter_names = free_parameters.names

        self._objective_values: NDArrayFloat = eki_objective(eki, X, G)
        self._mean_square_errors: NDArrayFloat = np.stack(
            [
                np.mean(np.square(G[_slice] - eki.observations[_slice, None]), axis=0)
                for _slice in eki.observation_slices
            ],
            axis=0,
        )

        self._iteration: int = eki.iteration
        self._pseudotime: float = eki.pseudotime
        if pseudo_dt is None:
            pseudo_dt = eki.pseudo_dt if eki.iteration > 0 else 0.0
        self._pseudo_dt: float = float(pseudo_dt)

        for array in (
            self._unconstrained_ensemble_mean,
            self._unconstrained_ensemble_cov,
            self._parameters,
            self._ensemble_mean,
            self._ensemble_cov,
            self._objective_values,
            self._mean_square_errors,
        ):
            if array.flags.owndata:
                array.setflags(write=False)

    @property
    def parameters(self) -> NDArrayFloat:
        """Return the constrained parameters. Read-only attribute."""
        return self._parameters

    @property
    def unconstrained_parameters(self) -> NDArrayFloat:
        """Return the unconstrained parameters. Read-only attribute."""
        return self._unconstrained_parameters

    @property
    def parameter_names(self) -> Sequence[str]:
        """Return the names of the parameters. Read-only attribute."""
        return tuple(self._parameter_names)

    @property
    def ensemble_mean(self) -> NDArrayFloat:
        """Return the transformed ensemble mean. Read-only attribute."""
        return self._ensemble_mean

    @property
    def unconstrained_ensemble_mean(self) -> NDArrayFloat:
        """Return the unconstrained ensemble mean. Read-only attribute."""
        return self._unconstrained_ensemble_mean

    @property
    def ensemble_cov(self) -> NDArrayFloat:
        """Return the linearized constrained covariance. Read-only attribute."""
        return self._ensemble_cov

    @property
    def unconstrained_ensemble_cov(self) -> NDArrayFloat:
        """Return the unconstrained ensemble covariance. Read-only attribute."""
        return self._unconstrained_ensemble_cov

    @property
    def ensemble_var(self) -> NDArrayFloat:
        """Return the diagonal of `ensemble_cov`."""
        return np.diag(self._ensemble_cov)

    @property
    def unconstrained_ensemble_var(self) -> NDArrayFloat:
        """Return the unconstrained ensemble variance."""
        return get_ensemble_variance(self._unconstrained_parameters)

    @property
    def objective_values(self) -> NDArrayFloat:
        """Return the misfit and prior term of each particle. Read-only attribute."""
        return self._objective_values

    @property
    def total_objective_values(self) -> NDArrayFloat:
        """Return the summed objective of each particle."""
        return np.sum(self._objective_values, axis=1)

    @property
    def mean_square_errors(self) -> NDArrayFloat:
        """Return the per channel mean square errors. Read-only attribute."""
        return self._mean_square_errors

    @property
    def iteration(self) -> int:
        """Return the iteration index. Read-only attribute."""
        return self._iteration

    @property
    def pseudotime(self) -> float:
        """Return the cumulated pseudo time. Read-only attribute."""
        return self._pseudotime

    @property
    def pseudo_dt(self) -> float:
        """Return the pseudo time step taken to reach this iteration."""
        return self._pseudo_dt

    def as_dict(self, member: Optional[int] = None) -> dict:
        """Return the constrained ensemble mean (or one member) keyed by name."""
        values = self._ensemble_mean if member is None else self._parameters[:, member]
        return {
            name: float(value) for name, value in zip(self._parameter_names, values)
        }

    def __repr__(self) -> str:
        mean = ", ".join(f"{k}={v:.3e}" for k, v in self.as_dict().items())
        finite = np.isfinite(self.total_objective_values)
        min_objective = (
            f"{np.min(self.total_objective_values[finite]):.3e}"
            if np.any(finite)
            else "nan"
        )
        return (
            f"IterationSummary(iteration={self.iteration}, "
            f"pseudotime={self.pseudotime:.3e}, pseudo_dt={self.pseudo_dt:.3e})\n"
            f"  ensemble mean: {mean}\n"
            f"  best particle objective: {min_objective}"
        )
