"""
Implement the Ensemble Kalman Inversion (EKI) calibration.

@author: pyeki developers
"""

import logging
import time
import warnings
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import scipy as sp  # type: ignore
from scipy._lib._util import check_random_state  # type: ignore
from tqdm import tqdm

from pyeki.inversion import (
    augment_forward_map_output,
    augment_noise_covariance,
    augment_observations,
)
from pyeki.parameters import FreeParameters
from pyeki.pseudo_stepping import (
    Iglesias2021,
    PseudoSteppingScheme,
    adaptive_step_parameters,
    get_pseudo_stepping,
)
from pyeki.resampling import (
    FailureCondition,
    NormExceedsMedian,
    Resampler,
    resample_failed_particles,
)
from pyeki.summary import IterationSummary
from pyeki.utils import NDArrayBool, NDArrayFloat, construct_noise_covariance

# pylint: disable=C0103 # Does not conform to snake_case naming style


class EnsembleKalmanInversion:
    r"""
    Ensemble Kalman Inversion.

    Implement the EKI of :cite:t:`iglesiasEnsembleKalmanMethods2013` with
    adaptive pseudo time stepping, Tikhonov regularization and the handling of
    failed forward model runs.

    At each iteration, the particles whose forward map output failed are
    excluded, the successful ones are updated

    .. math::
       \theta^{n+1}_{j} = \theta^{n}_{j} + C^{n}_{\theta g}\left(C^{n}_{gg}
       + \Delta t_{n}^{-1} \Gamma_{y}\right)^{-1} \left(y + \xi_{j} - g^{n}_{j}
       \right),

    the failed ones are drawn from the updated ensemble distribution, and the
    forward map is evaluated on the new ensemble.

    Attributes
    ----------
    observations : NDArrayFloat
        Observation vector :math:`y` with dimension :math:`N_{obs}`.
    cov_obs: NDArrayFloat
        Observation noise covariance :math:`\Gamma_{y}` with dimensions
        (:math:`N_{obs}`, :math:`N_{obs}`).
    cov_obs_cholesky: NDArrayFloat
        Upper Cholesky factor of `cov_obs`.
    mapped_observations: NDArrayFloat
        Observations seen by the update: `observations`, with the prior mean
        appended in Tikhonov mode.
    noise_covariance: NDArrayFloat
        Noise covariance seen by the update: `cov_obs`, block diagonal with the
        prior covariance in Tikhonov mode.
    mapped_cov_obs_cholesky: NDArrayFloat
        Upper Cholesky factor of `noise_covariance`.
    noise_mean: Optional[NDArrayFloat]
        Mean of the observation perturbations. None means zero.
    observation_slices: List[slice]
        Slice of each observation channel in the observation vector.
    forward_map: Callable[..., NDArrayFloat]
        Function mapping an ensemble of unconstrained parameters
        (:math:`N_{m}`, :math:`N_{e}`) to the predictions
        (:math:`N_{obs}`, :math:`N_{e}`). Failed runs are flagged with NaN.
    forward_map_args: Sequence[Any]
        Additional args for the callable forward_map.
    forward_map_kwargs: Dict[str, Any]
        Additional kwargs for the callable forward_map.
    free_parameters: Optional[FreeParameters]
        Priors and transforms of the calibrated parameters.
    unconstrained_parameters: NDArrayFloat
        Current ensemble with dimensions (:math:`N_{m}`, :math:`N_{e}`).
    forward_map_output: NDArrayFloat
        Forward map output of the current ensemble.
    iteration: int
        Number of iterations performed.
    pseudotime: float
        Cumulated pseudo time.
    pseudo_dt: float
        Last pseudo time step taken.
    iteration_summaries: List[IterationSummary]
        Summaries of the ensemble, the first one being the initial ensemble.
    pseudo_stepping: Optional[PseudoSteppingScheme]
        Default stepping scheme. None means a constant step `pseudo_dt`.
    resampler: Optional[Resampler]
        Forward map level resampling of the failed particles.
    mark_failed_particles: FailureCondition
        Function flagging the failed particles from the forward map output.
    tikhonov: bool
        Whether to regularize the update toward the prior.
    perturb_observations: bool
        Whether to perturb the observations in the update.
    momentum_parameter: float
        Momentum applied after each update.
    covariance_inflation: float
        Inflation of the ensemble anomalies applied after each update.
    rng: np.random.RandomState
        The random number generator.
    logger: Optional[logging.Logger]
        Optional :class:`logging.Logger` instance used for event logging.
    """

    # pylint: disable=R0902 # Too many instance attributes
    __slots__: List[str] = [
        "observations",
        "cov_obs",
        "cov_obs_cholesky",
        "mapped_observations",
        "noise_covariance",
        "mapped_cov_obs_cholesky",
        "noise_mean",
        "mapped_noise_mean",
        "observation_slices",
        "forward_map",
        "forward_map_args",
        "forward_map_kwargs",
        "free_parameters",
        "unconstrained_parameters",
        "forward_map_output",
        "iteration",
        "pseudotime",
        "_pseudo_dt",
        "iteration_summaries",
        "_pseudo_stepping",
        "resampler",
        "mark_failed_particles",
        "tikhonov",
        "perturb_observations",
        "momentum_parameter",
        "covariance_inflation",
        "rng",
        "logger",
    ]

    def __init__(
        self,
        observations: NDArrayFloat,
        forward_map: Callable[..., NDArrayFloat],
        forward_map_args: Sequence[Any] = (),
        forward_map_kwargs: Optional[Dict[str, Any]] = None,
        free_parameters: Optional[FreeParameters] = None,
        unconstrained_parameters: Optional[NDArrayFloat] = None,
        forward_map_output: Optional[NDArrayFloat] = None,
        n_ensemble: Optional[int] = None,
        noise_covariance: Union[float, NDArrayFloat] = 1.0,
        observation_channels: Optional[Sequence[int]] = None,
        pseudo_stepping: Optional[Union[str, PseudoSteppingScheme]] = None,
        pseudo_dt: float = 1.0,
        resampler: Optional[Resampler] = Resampler(),
        mark_failed_particles: FailureCondition = NormExceedsMedian(1e9),
        tikhonov: bool = False,
        perturb_observations: bool = True,
        noise_mean: Optional[NDArrayFloat] = None,
        momentum_parameter: float = 0.0,
        covariance_inflation: float = 0.0,
        random_state: Optional[
            Union[int, np.random.Generator, np.random.RandomState]
        ] = 198873,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        # pylint: disable=R0913 # Too many arguments
        # pylint: disable=R0914 # Too many local variables
        r"""Construct the instance.

        Parameters
        ----------
        observations : NDArrayFloat
            Observation vector with dimension :math:`N_{obs}`.
        forward_map: Callable[..., NDArrayFloat]
            Function calling the forward model for all ensemble members and
            returning the predicted data for each member. Failed runs must return
            non-finite values rather than raising.
        forward_map_args: Sequence[Any]
            Additional args for the callable forward_map. The default is ().
        forward_map_kwargs: Optional[Dict[str, Any]]
            Additional kwargs for the callable forward_map. The default is None.
        free_parameters: Optional[FreeParameters]
            Priors of the calibrated parameters. Required to draw the initial
            ensemble and for Tikhonov regularization. The default is None.
        unconstrained_parameters: Optional[NDArrayFloat]
            Initial ensemble with dimensions (:math:`N_{m}`, :math:`N_{e}`). If
            None, it is drawn from `free_parameters`. The default is None.
        forward_map_output: Optional[NDArrayFloat]
            Forward map output of the initial ensemble. If None, the forward map
            is evaluated. Requires `unconstrained_parameters`. The default is None.
        n_ensemble: Optional[int]
            Number of ensemble members :math:`N_{e}` to draw from the priors.
            The default is None.
        noise_covariance: Union[float, NDArrayFloat]
            Observation noise covariance :math:`\Gamma_{y}`: a positive scalar
            (scaled identity), a 1D array (diagonal) or a full matrix.
            The default is 1.0.
        observation_channels: Optional[Sequence[int]]
            Number of observations of each channel, in order. They are used to
            compute the per channel mean square errors of the summaries.
            The default is None, i.e., a single channel.
        pseudo_stepping: Optional[Union[str, PseudoSteppingScheme]]
            Default stepping scheme, or its name. The default is None, i.e., a
            non adaptive step `pseudo_dt`.
        pseudo_dt: float
            Initial pseudo time step. The default is 1.0.
        resampler: Optional[Resampler]
            Forward map level resampling. None disables it. The default is
            `Resampler()`.
        mark_failed_particles: FailureCondition
            Particle failure condition. The default is `NormExceedsMedian(1e9)`.
        tikhonov: bool
            Whether to regularize the update toward the prior. The default is
            False.
        perturb_observations: bool
            Whether to perturb the observations in the update. The default is
            True.
        noise_mean: Optional[NDArrayFloat]
            Mean of the observation perturbations. The default is None.
        momentum_parameter: float
            Momentum applied after each update. The default is 0.0.
        covariance_inflation: float
            Inflation of the ensemble anomalies after each update. The default
            is 0.0.
        random_state: Optional[Union[int, np.random.Generator, np.random.RandomState]]
            Pseudorandom number generator state used to draw the initial
            ensemble, the perturbations and the resampled particles.
            If `random_state` is ``None`` (or `np.random`), the
            `numpy.random.RandomState` singleton is used.
            If `random_state` is an int, a new ``RandomState`` instance is used,
            seeded with `random_state`.
            If `random_state` is already a ``Generator`` or ``RandomState``
            instance then that instance is used.
        logger: Optional[logging.Logger]
            Optional :class:`logging.Logger` instance used for event logging.
            The default is None.
        """
        self.logger: Optional[logging.Logger] = logger
        self.rng: np.random.RandomState = check_random_state(
            random_state
        )  # type: ignore

        self.observations: NDArrayFloat = np.array(observations, dtype=np.float64)
        if self.observations.ndim != 1:
            raise ValueError("observations must be a 1D vector!")
        self.cov_obs: NDArrayFloat = construct_noise_covariance(
            noise_covariance, self.observations
        )
        self.cov_obs_cholesky: NDArrayFloat = sp.linalg.cholesky(
            self.cov_obs, lower=False
        )
        self.observation_slices: List[slice] = self._get_observation_slices(
            observation_channels
        )
        self.noise_mean: Optional[NDArrayFloat] = None
        if noise_mean is not None:
            self.noise_mean = np.ravel(np.asarray(noise_mean, dtype=np.float64))
            if self.noise_mean.size != self.n_obs:
                raise ValueError(
                    f"noise_mean must have {self.n_obs} values, "
                    f"got {self.noise_mean.size}!"
                )

        self.forward_map: Callable[..., NDArrayFloat] = forward_map
        self.forward_map_args: Sequence[Any] = forward_map_args
        if forward_map_kwargs is None:
            forward_map_kwargs = {}
        self.forward_map_kwargs: Dict[str, Any] = forward_map_kwargs

        self.free_parameters: Optional[FreeParameters] = free_parameters
        self.tikhonov: bool = tikhonov
        self._set_mapped_observations()

        self.pseudo_stepping = pseudo_stepping  # type: ignore
        self.pseudo_dt = pseudo_dt
        self.resampler: Optional[Resampler] = resampler
        self.mark_failed_particles: FailureCondition = mark_failed_particles
        self.perturb_observations: bool = perturb_observations
        self.momentum_parameter: float = momentum_parameter
        self.covariance_inflation: float = covariance_inflation

        self.iteration: int = 0
        self.pseudotime: float = 0.0
        self.iteration_summaries: List[IterationSummary] = []

        X = self._get_initial_ensemble(
            unconstrained_parameters, forward_map_output, n_ensemble
        )
        if forward_map_output is None:
            start = time.perf_counter()
            X, G = self.resampling_forward_map(X)
            self.loginfo(
                f"Initial ensemble forward map evaluated in "
                f"{time.perf_counter() - start:.2f} seconds"
            )
        else:
            G = self._check_forward_map_output(
                np.asarray(forward_map_output, dtype=np.float64), X
            )
        self.unconstrained_parameters: NDArrayFloat = X
        self.forward_map_output: NDArrayFloat = G
        self.iteration_summaries.append(IterationSummary(self, X, G))

    def __repr__(self) -> str:
        return (
            f"EnsembleKalmanInversion(n_ensemble={self.n_ensemble}, "
            f"n_params={self.n_params}, n_obs={self.n_obs}, "
            f"iteration={self.iteration}, pseudotime={self.pseudotime:.3e}, "
            f"pseudo_stepping={self.pseudo_stepping!r}, tikhonov={self.tikhonov}, "
            f"resampler={self.resampler!r})"
        )

    def loginfo(self, msg: str) -> None:
        """Log the message if a logger is attached."""
        if self.logger is not None:
            self.logger.info(msg)

    @property
    def n_ensemble(self) -> int:
        """Return the number of ensemble members."""
        return self.unconstrained_parameters.shape[1]

    @property
    def n_params(self) -> int:
        """Return the number of calibrated parameters."""
        return self.unconstrained_parameters.shape[0]

    @property
    def n_obs(self) -> int:
        """Return the number of observations."""
        return self.observations.size

    @property
    def pseudo_dt(self) -> float:
        """Return the last pseudo time step."""
        return self._pseudo_dt

    @pseudo_dt.setter
    def pseudo_dt(self, dt: float) -> None:
        if not dt > 0.0:
            raise ValueError(f"pseudo_dt ({dt}) must be strictly positive!")
        self._pseudo_dt: float = float(dt)

    @property
    def pseudo_stepping(self) -> Optional[PseudoSteppingScheme]:
        """Return the default pseudo stepping scheme."""
        return self._pseudo_stepping

    @pseudo_stepping.setter
    def pseudo_stepping(
        self, scheme: Optional[Union[str, PseudoSteppingScheme]]
    ) -> None:
        self._pseudo_stepping: Optional[PseudoSteppingScheme] = get_pseudo_stepping(
            scheme
        )

    @property
    def successful_particles(self) -> NDArrayBool:
        """Return the mask of the particles whose forward map output succeeded."""
        return ~self.mark_failed_particles(self.forward_map_output)

    def _get_observation_slices(
        self, observation_channels: Optional[Sequence[int]]
    ) -> List[slice]:
        if observation_channels is None:
            return [slice(0, self.n_obs)]
        if sum(observation_channels) != self.n_obs or any(
            n < 1 for n in observation_channels
        ):
            raise ValueError(
                "observation_channels must be positive sizes summing to the "
                f"number of observations ({self.n_obs})!"
            )
        bounds = np.cumsum([0] + list(observation_channels))
        return [slice(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:])]

    def _set_mapped_observations(self) -> None:
        """Set the observations and noise covariance seen by the update."""
        if not self.tikhonov:
            self.mapped_observations: NDArrayFloat = self.observations
            self.noise_covariance: NDArrayFloat = self.cov_obs
            self.mapped_cov_obs_cholesky: NDArrayFloat = self.cov_obs_cholesky
            self.mapped_noise_mean: Optional[NDArrayFloat] = self.noise_mean
            return
        if self.free_parameters is None:
            raise ValueError("Tikhonov regularization requires free_parameters!")
        self.mapped_observations = augment_observations(
            self.observations, self.free_parameters.unconstrained_prior_mean
        )
        self.noise_covariance = augment_noise_covariance(
            self.cov_obs, self.free_parameters.unconstrained_prior_cov
        )
        self.mapped_cov_obs_cholesky = sp.linalg.cholesky(
            self.noise_covariance, lower=False
        )
        if self.noise_mean is None:
            self.mapped_noise_mean = None
        else:
            self.mapped_noise_mean = np.concatenate(
                [self.noise_mean, np.zeros(self.free_parameters.n_params)]
            )

    def _get_initial_ensemble(
        self,
        unconstrained_parameters: Optional[NDArrayFloat],
        forward_map_output: Optional[NDArrayFloat],
        n_ensemble: Optional[int],
    ) -> NDArrayFloat:
        if unconstrained_parameters is None:
            if forward_map_output is not None:
                raise ValueError(
                    "forward_map_output cannot be given without "
                    "unconstrained_parameters!"
                )
            if self.free_parameters is None or n_ensemble is None:
                raise ValueError(
                    "Either unconstrained_parameters, or free_parameters and "
                    "n_ensemble must be given!"
                )
            return self.free_parameters.sample(n_ensemble, self.rng)

        X = np.array(unconstrained_parameters, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError(
                "unconstrained_parameters must be a 2D matrix with dimensions "
                "(N_params, N_ensemble)!"
            )
        if n_ensemble is not None and n_ensemble != X.shape[1]:
            raise ValueError(
                f"n_ensemble ({n_ensemble}) does not match the number of columns "
                f"of unconstrained_parameters ({X.shape[1]})!"
            )
        if self.free_parameters is not None and (
            X.shape[0] != self.free_parameters.n_params
        ):
            raise ValueError(
                f"unconstrained_parameters has {X.shape[0]} rows but there are "
                f"{self.free_parameters.n_params} free parameters!"
            )
        return X

    def _check_forward_map_output(
        self, G: NDArrayFloat, X: NDArrayFloat
    ) -> NDArrayFloat:
        if G.shape != (self.n_obs, X.shape[1]):
            raise ValueError(
                f"The forward map output must have dimensions ({self.n_obs}, "
                f"{X.shape[1]}), got {G.shape}!"
            )
        return G

    def evaluate_forward_map(self, X: NDArrayFloat) -> NDArrayFloat:
        """Return the forward map output of the ensemble `X`."""
        G = np.asarray(
            self.forward_map(X, *self.forward_map_args, **self.forward_map_kwargs),
            dtype=np.float64,
        )
        return self._check_forward_map_output(G, X)

    def resampling_forward_map(
        self, X: NDArrayFloat
    ) -> Tuple[NDArrayFloat, NDArrayFloat]:
        """
        Evaluate the forward map and resample the failed particles.

        Returns
        -------
        Tuple[NDArrayFloat, NDArrayFloat]
            The ensemble, possibly with resampled particles, and its forward map
            output.
        """
        G = self.evaluate_forward_map(X)
        if self.resampler is not None:
            X, G = self.resampler.resample(X, G, self)
        return X, G

    def step_parameters(
        self,
        pseudo_stepping: Optional[Union[str, PseudoSteppingScheme]] = None,
        pseudo_dt: Optional[float] = None,
    ) -> Tuple[NDArrayFloat, float]:
        """
        Return the updated ensemble and the pseudo time step taken.

        Failed particles are excluded from the update and drawn from the normal
        distribution of the updated successful particles.

        Parameters
        ----------
        pseudo_stepping : Optional[Union[str, PseudoSteppingScheme]]
            Stepping scheme. The default is None, i.e., `self.pseudo_stepping`.
        pseudo_dt : Optional[float]
            Step of the non adaptive stepping, or initial guess of the adaptive
            ones. The default is None, i.e., `self.pseudo_dt`.

        Raises
        ------
        ValueError
            If all particles failed.
        """
        scheme = (
            self.pseudo_stepping
            if pseudo_stepping is None
            else get_pseudo_stepping(pseudo_stepping)
        )
        X = self.unconstrained_parameters
        G = self.forward_map_output

        failures = self.mark_failed_particles(G)
        successes = ~failures
        n_failures = int(np.sum(failures))
        if n_failures == self.n_ensemble:
            raise ValueError(
                "All particles failed, the ensemble cannot be updated!"
            )
        if n_failures > 0:
            msg = (
                f"{n_failures} particles failed. Performing ensemble update with "
                f"statistics from {self.n_ensemble - n_failures} successful "
                "particles."
            )
            warnings.warn(msg)
            self.loginfo(msg)

        X_successful = X[:, successes]
        G_successful = G[:, successes]
        if self.tikhonov:
            G_successful = augment_forward_map_output(G_successful, X_successful)

        X_successful_new, dt = adaptive_step_parameters(
            scheme,
            X_successful,
            G_successful,
            self,
            pseudo_dt=pseudo_dt,
            momentum_parameter=self.momentum_parameter,
            covariance_inflation=self.covariance_inflation,
        )

        X_new = np.empty_like(X)
        X_new[:, successes] = X_successful_new
        return resample_failed_particles(X_new, failures, self.rng), dt

    @staticmethod
    def _check_iterations(n: int) -> int:
        try:
            if int(n) < 1:
                raise ValueError("The number of iterations must be 1 or more.")
            if int(n) != float(n):
                raise TypeError()
        except TypeError as e:
            raise TypeError(
                "The number of iterations must be a positive integer."
            ) from e
        return int(n)

    def iterate(
        self,
        iterations: int = 1,
        pseudo_dt: Optional[float] = None,
        pseudo_stepping: Optional[Union[str, PseudoSteppingScheme]] = None,
        show_progress: bool = False,
    ) -> NDArrayFloat:
        """
        Run the EKI iterations.

        Parameters
        ----------
        iterations : int
            Number of iterations to perform. The default is 1.
        pseudo_dt : Optional[float]
            Step of the non adaptive stepping, or initial guess of the adaptive
            ones. The default is None, i.e., the last step taken.
        pseudo_stepping : Optional[Union[str, PseudoSteppingScheme]]
            Stepping scheme. The default is None, i.e., `self.pseudo_stepping`.
        show_progress : bool
            Whether to display a progress bar. The default is False.

        Returns
        -------
        NDArrayFloat
            The constrained ensemble mean after the last iteration, i.e., the
            best estimate of the parameters.

        Notes
        -----
        :class:`Iglesias2021` limits the total pseudo time to 1. Once it is
        spent, the remaining iterations are skipped with a warning and the
        current best estimate is returned.
        """
        n_iterations = self._check_iterations(iterations)
        if pseudo_stepping is not None:
            pseudo_stepping = get_pseudo_stepping(pseudo_stepping)
        scheme = self.pseudo_stepping if pseudo_stepping is None else pseudo_stepping

        iterator = range(n_iterations)
        if show_progress:
            iterator = tqdm(iterator, desc="EKI iterations")  # type: ignore

        for _ in iterator:
            if isinstance(scheme, Iglesias2021) and self.pseudotime >= 1.0:
                msg = (
                    "The pseudo time budget of Iglesias2021 is spent "
                    f"(pseudotime = {self.pseudotime:.3e}), stopping after "
                    f"iteration {self.iteration}."
                )
                warnings.warn(msg)
                self.loginfo(msg)
                break
            self.loginfo(f"Iteration # {self.iteration + 1}")
            X, dt = self.step_parameters(pseudo_stepping, pseudo_dt)

            # Update the pseudo clock
            self.iteration += 1
            self.pseudotime += dt
            self.pseudo_dt = dt

            start = time.perf_counter()
            X, G = self.resampling_forward_map(X)
            self.loginfo(
                f"- Forward map evaluated in {time.perf_counter() - start:.2f} "
                "seconds"
            )
            self.unconstrained_parameters = X
            self.forward_map_output = G
            self.iteration_summaries.append(IterationSummary(self, X, G))
            self.loginfo(f"- pseudo dt = {dt:.3e}, pseudotime = {self.pseudotime:.3e}")

        return self.iteration_summaries[-1].ensemble_mean
