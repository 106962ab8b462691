"""
Pseudo time stepping schemes.

A scheme decides the pseudo time step :math:`\\Delta t_{n}` taken at each EKI
iteration and produces the updated ensemble. The update of every scheme goes
through :func:`compute_update`, which dispatches on the scheme class. New schemes
are added with :func:`register_pseudo_stepping`.

@author: pyeki developers
"""

from __future__ import annotations

import warnings
from abc import ABC
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
from sklearn.gaussian_process import GaussianProcessRegressor  # type: ignore
from sklearn.gaussian_process.kernels import (  # type: ignore
    ConstantKernel,
    Matern,
    WhiteKernel,
)

from pyeki.inversion import iglesias_2013_update, kovachki_2018_update
from pyeki.utils import (
    NDArrayFloat,
    check_ensemble_size,
    inflate_ensemble_around_its_mean,
    ls_cost_function,
    volume_ratio,
)

if TYPE_CHECKING:  # pragma: no cover
    from pyeki.eki import EnsembleKalmanInversion

# pylint: disable=C0103 # Does not conform to snake_case naming style

UpdateFunction = Callable[..., Tuple[NDArrayFloat, float]]

#: Maximum number of step halvings for :class:`Default`.
MAX_HALVINGS: int = 64
#: Maximum number of step corrections for :class:`ConstantConvergence`.
MAX_CONVERGENCE_CORRECTIONS: int = 10
#: Maximum number of step doublings to calibrate the Kovachki initial step.
MAX_DOUBLINGS: int = 50
#: Maximum number of backtracking steps in the GP line search.
MAX_BACKTRACKING: int = 50


class PseudoSteppingScheme(ABC):
    """Base class of the pseudo time stepping schemes."""

    __slots__: List[str] = []

    def __repr__(self) -> str:
        params = ", ".join(
            f"{name.lstrip('_')}={getattr(self, name)!r}" for name in self.__slots__
        )
        return f"{type(self).__name__}({params})"


def _check_positive(value: float, name: str) -> float:
    if not value > 0.0:
        raise ValueError(f"{name} ({value}) must be strictly positive!")
    return float(value)


class Constant(PseudoSteppingScheme):
    """Fixed pseudo time step."""

    __slots__ = ["step_size"]

    def __init__(self, step_size: float = 1.0) -> None:
        self.step_size: float = _check_positive(step_size, "step_size")


class Default(PseudoSteppingScheme):
    r"""
    Halve the step until the ensemble does not collapse too much.

    Starting from the previous step (or the supplied guess), :math:`\Delta t` is
    halved until
    :math:`\det C^{n+1}_{\theta\theta} > c \det C^{n}_{\theta\theta}`, with
    :math:`c` the `cov_threshold`.
    """

    __slots__ = ["cov_threshold"]

    def __init__(self, cov_threshold: float = 0.01) -> None:
        self.cov_threshold: float = _check_positive(cov_threshold, "cov_threshold")


class ConstantConvergence(PseudoSteppingScheme):
    """
    Adapt the step so that the ensemble covariance volume shrinks at a fixed rate.

    A `convergence_ratio` of 0.7 means that the determinant of the parameter
    covariance is decreased to 70% of its value at the previous iteration.
    """

    __slots__ = ["convergence_ratio"]

    def __init__(self, convergence_ratio: float = 0.7) -> None:
        if not 0.0 < convergence_ratio < 1.0:
            raise ValueError(
                f"convergence_ratio ({convergence_ratio}) should be in ]0, 1[!"
            )
        self.convergence_ratio: float = float(convergence_ratio)


class Kovachki2018(PseudoSteppingScheme):
    """Adaptive step normalized by the Frobenius norm of the transformation matrix."""

    __slots__ = ["initial_step_size"]

    def __init__(self, initial_step_size: float = 1.0) -> None:
        self.initial_step_size: float = _check_positive(
            initial_step_size, "initial_step_size"
        )


class Kovachki2018InitialConvergenceThreshold(PseudoSteppingScheme):
    """
    :class:`Kovachki2018` with an initial step size calibrated on first use.

    At the first update, the initial step size is doubled from 1.0 until the
    covariance volume ratio drops to or below `initial_convergence_threshold`.
    The calibrated value is then kept for the following iterations.
    """

    __slots__ = ["initial_convergence_threshold", "initial_step_size"]

    def __init__(self, initial_convergence_threshold: float = 0.7) -> None:
        if not 0.0 < initial_convergence_threshold < 1.0:
            raise ValueError(
                "initial_convergence_threshold "
                f"({initial_convergence_threshold}) should be in ]0, 1[!"
            )
        self.initial_convergence_threshold: float = float(
            initial_convergence_threshold
        )
        self.initial_step_size: Optional[float] = None


class Chada2021(PseudoSteppingScheme):
    r"""Step growing with the iteration: :math:`\Delta t_{n} = (n+1)^{\beta}\Delta t_{0}`."""

    __slots__ = ["initial_step_size", "beta"]

    def __init__(self, initial_step_size: float = 1.0, beta: float = 0.0) -> None:
        self.initial_step_size: float = _check_positive(
            initial_step_size, "initial_step_size"
        )
        self.beta: float = float(beta)


class GPLineSearch(PseudoSteppingScheme):
    """
    Backtracking line search on a Gaussian process surrogate of the objective.

    Attributes
    ----------
    learning_rate: float
        Armijo sufficient decrease constant.
    initial_step_size: float
        Step used at the first iteration, when no history is available.
    """

    __slots__ = ["learning_rate", "initial_step_size"]

    def __init__(self, learning_rate: float = 1e-4, initial_step_size: float = 1.0):
        self.learning_rate: float = _check_positive(learning_rate, "learning_rate")
        self.initial_step_size: float = _check_positive(
            initial_step_size, "initial_step_size"
        )


class Iglesias2021(PseudoSteppingScheme):
    """Data misfit controlled step, limited to a total pseudo time of 1."""

    __slots__: List[str] = []


###
### Updates
###


def _iglesias_2013_update(
    X: NDArrayFloat, G: NDArrayFloat, eki: EnsembleKalmanInversion, pseudo_dt: float
) -> NDArrayFloat:
    return iglesias_2013_update(
        X,
        G,
        eki.mapped_observations,
        eki.noise_covariance,
        pseudo_dt=pseudo_dt,
        rng=eki.rng,
        cov_obs_cholesky=eki.mapped_cov_obs_cholesky,
        is_perturbed=eki.perturb_observations,
        noise_mean=eki.mapped_noise_mean,
    )


def _is_approx(value: float, target: float, atol: float, rtol: float) -> bool:
    return abs(value - target) <= max(atol, rtol * max(abs(value), abs(target)))


def _constant_update(
    scheme: Constant,
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    return _iglesias_2013_update(X, G, eki, scheme.step_size), scheme.step_size


def _default_update(
    scheme: Default,
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    check_ensemble_size(X)
    dt = eki.pseudo_dt if pseudo_dt is None else pseudo_dt
    for _ in range(MAX_HALVINGS + 1):
        X_new = _iglesias_2013_update(X, G, eki, dt)
        if volume_ratio(X_new, X) > scheme.cov_threshold:
            return X_new, dt
        dt /= 2.0
    raise RuntimeError(
        f"No acceptable step found after {MAX_HALVINGS} halvings, "
        f"the pseudo time step reached {dt:.3e}!"
    )


def _constant_convergence_update(
    scheme: ConstantConvergence,
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    target = scheme.convergence_ratio
    # First guess, safe from collapse
    X_new, dt = _default_update(Default(), X, G, eki, pseudo_dt=1.0)
    r = volume_ratio(X_new, X)

    # "Accelerated" fixed point iteration on the step size
    p = 1.1
    n_corrections = 0
    while (
        not _is_approx(r, target, atol=0.03, rtol=0.1)
        and n_corrections < MAX_CONVERGENCE_CORRECTIONS
    ):
        dt *= (r / target) ** p
        X_new = _iglesias_2013_update(X, G, eki, dt)
        r = volume_ratio(X_new, X)
        n_corrections += 1

    if not _is_approx(r, target, atol=0.03, rtol=0.1):
        warnings.warn(
            f"The step size search did not converge after {n_corrections} "
            f"corrections: convergence ratio {r:.3f} (target {target})."
        )
    eki.loginfo(
        f"Particles stepped adaptively with convergence rate {r:.3f} "
        f"(target {target})"
    )
    return X_new, dt


def _kovachki_2018_update(
    scheme: Kovachki2018,
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    return kovachki_2018_update(
        X,
        G,
        eki.mapped_observations,
        eki.noise_covariance,
        initial_step_size=scheme.initial_step_size,
    )


def _kovachki_2018_threshold_update(
    scheme: Kovachki2018InitialConvergenceThreshold,
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    if scheme.initial_step_size is None:
        threshold = scheme.initial_convergence_threshold
        step = 1.0
        X_new, _ = kovachki_2018_update(
            X, G, eki.mapped_observations, eki.noise_covariance, step
        )
        r = volume_ratio(X_new, X)
        n_doublings = 0
        while r > threshold and n_doublings < MAX_DOUBLINGS:
            step *= 2.0
            X_new, _ = kovachki_2018_update(
                X, G, eki.mapped_observations, eki.noise_covariance, step
            )
            r = volume_ratio(X_new, X)
            n_doublings += 1
        if r > threshold:
            warnings.warn(
                f"The initial step size search did not reach the convergence "
                f"threshold {threshold} after {n_doublings} doublings "
                f"(ratio {r:.3f})."
            )
        eki.loginfo(f"Kovachki initial step size set to {step:.3e}")
        scheme.initial_step_size = step

    return kovachki_2018_update(
        X,
        G,
        eki.mapped_observations,
        eki.noise_covariance,
        initial_step_size=scheme.initial_step_size,
    )


def _chada_2021_update(
    scheme: Chada2021,
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    dt = (eki.iteration + 1) ** scheme.beta * scheme.initial_step_size
    return _iglesias_2013_update(X, G, eki, dt), dt


def _iglesias_2021_update(
    scheme: Iglesias2021,
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    r"""
    Data misfit controlled step.

    .. math::
        q_{n} = \max\left(\frac{M}{2\overline{\Phi}},
        \sqrt{\frac{M}{2\mathrm{Var}(\Phi)}}\right), \quad
        \Delta t_{n} = \min(q_{n}, 1 - t_{n})
    """
    t_n = eki.pseudotime
    if t_n >= 1.0:
        raise ValueError(
            f"The pseudo time ({t_n}) has reached 1, no more Iglesias2021 step "
            "can be taken!"
        )
    M = G.shape[0]
    phi = ls_cost_function(G, eki.mapped_observations, eki.mapped_cov_obs_cholesky)
    q = max(M / (2.0 * np.mean(phi)), np.sqrt(M / (2.0 * np.var(phi, ddof=1))))
    dt = float(min(q, 1.0 - t_n))
    return _iglesias_2013_update(X, G, eki, dt), dt


def trained_gp_predict_function(
    X: NDArrayFloat, y: NDArrayFloat
) -> Callable[[NDArrayFloat], NDArrayFloat]:
    """
    Fit a Gaussian process surrogate on the pairs (X[:, i], y[i]).

    Parameters
    ----------
    X : NDArrayFloat
        Training points with shape (:math:`N_{m}`, :math:`N_{samples}`).
    y : NDArrayFloat
        Objective values with dimension :math:`N_{samples}`.

    Returns
    -------
    Callable[[NDArrayFloat], NDArrayFloat]
        The predictor, taking points with shape (:math:`N_{m}`, :math:`N`).
    """
    n_params = X.shape[0]
    kernel = ConstantKernel(1.0) * Matern(
        length_scale=np.ones(n_params), nu=2.5
    ) + WhiteKernel(noise_level=np.exp(-4.0))
    gp = GaussianProcessRegressor(kernel=kernel, normalize_y=True)
    gp.fit(X.T, y)

    def predict(x: NDArrayFloat) -> NDArrayFloat:
        return gp.predict(np.reshape(x, (n_params, -1)).T)

    return predict


def _backtracking(
    phi: Callable[[float], float],
    phi_0: float,
    dphi_0: float,
    c_1: float,
    alpha: float = 1.0,
) -> float:
    r"""
    Armijo backtracking line search.

    The step :math:`\alpha` is halved until the sufficient decrease condition
    :math:`\phi(\alpha) \leq \phi(0) + c_{1} \alpha \phi'(0)` holds, or
    `MAX_BACKTRACKING` halvings have been made, in which case the last step is
    returned.

    Notes
    -----
    The trial step is always halved. No quadratic or cubic interpolation of
    :math:`\phi` is used to pick the next trial step.
    """
    for _ in range(MAX_BACKTRACKING):
        if phi(alpha) <= phi_0 + c_1 * alpha * dphi_0:
            return alpha
        alpha /= 2.0
    return alpha


def _gp_line_search_update(
    scheme: GPLineSearch,
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    summaries = eki.iteration_summaries
    if len(summaries) < 2:
        return _constant_update(Constant(scheme.initial_step_size), X, G, eki)

    check_ensemble_size(X)
    successes = eki.successful_particles
    C_XX = np.atleast_2d(np.cov(X, ddof=1))

    # The EKI dynamic of a particle is a preconditioned gradient descent
    # dX/dt = -C_XX grad(Φ) in the continuous limit with a locally linear G.
    X_previous = summaries[-2].unconstrained_parameters[:, successes]
    approx_grad = -np.linalg.solve(C_XX, X - X_previous)

    X_test = _iglesias_2013_update(X, G, eki, 1.0)
    forward_direction = X_test - X

    # All the samples generated so far
    X_train = np.hstack([s.unconstrained_parameters for s in summaries])
    y_train = np.concatenate([s.total_objective_values for s in summaries])
    is_finite = np.isfinite(y_train)
    predict = trained_gp_predict_function(X_train[:, is_finite], y_train[is_finite])

    objectives = summaries[-1].total_objective_values[successes]
    steps = []
    for j in range(X.shape[1]):
        x_j = X[:, j]
        s_j = forward_direction[:, j]
        steps.append(
            _backtracking(
                lambda alpha: float(predict(x_j + alpha * s_j)[0]),
                float(objectives[j]),
                float(s_j @ approx_grad[:, j]),
                scheme.learning_rate,
            )
        )
    dt = float(np.mean(steps))
    eki.loginfo(f"GP line search step: {dt:.3e}")
    return X + dt * forward_direction, dt


###
### Registry
###

_UPDATE_FUNCTIONS: Dict[type, UpdateFunction] = {
    Constant: _constant_update,
    Default: _default_update,
    ConstantConvergence: _constant_convergence_update,
    Kovachki2018: _kovachki_2018_update,
    Kovachki2018InitialConvergenceThreshold: _kovachki_2018_threshold_update,
    Chada2021: _chada_2021_update,
    GPLineSearch: _gp_line_search_update,
    Iglesias2021: _iglesias_2021_update,
}


def register_pseudo_stepping(
    scheme_class: type, update_function: UpdateFunction
) -> None:
    """
    Register a new pseudo stepping scheme.

    Parameters
    ----------
    scheme_class : type
        Subclass of :class:`PseudoSteppingScheme`. Its class name is the name
        accepted by :func:`get_pseudo_stepping`.
    update_function : UpdateFunction
        Function `(scheme, X, G, eki, pseudo_dt) -> (X_new, dt)`.
    """
    if not (
        isinstance(scheme_class, type)
        and issubclass(scheme_class, PseudoSteppingScheme)
    ):
        raise TypeError(
            f"{scheme_class} is not a subclass of PseudoSteppingScheme!"
        )
    _UPDATE_FUNCTIONS[scheme_class] = update_function


def available_pseudo_steppings() -> List[str]:
    """Return the names of the registered schemes."""
    return [scheme_class.__name__ for scheme_class in _UPDATE_FUNCTIONS]


def get_pseudo_stepping(
    scheme: Optional[Union[str, PseudoSteppingScheme]],
) -> Optional[PseudoSteppingScheme]:
    """
    Return a scheme instance from its name or the instance itself.

    Names are case insensitive and build the scheme with its default parameters.
    None is returned unchanged (non adaptive stepping).
    """
    if scheme is None or isinstance(scheme, PseudoSteppingScheme):
        return scheme
    if isinstance(scheme, str):
        for scheme_class in _UPDATE_FUNCTIONS:
            if scheme_class.__name__.lower() == scheme.lower():
                return scheme_class()
        raise ValueError(
            f"{scheme} is not a supported pseudo stepping! Supported values are "
            f"{available_pseudo_steppings()}."
        )
    raise TypeError(
        "pseudo_stepping must be None, a string or a PseudoSteppingScheme instance!"
    )


def compute_update(
    scheme: Optional[PseudoSteppingScheme],
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
) -> Tuple[NDArrayFloat, float]:
    """
    Return the updated ensemble and the pseudo time step taken.

    Parameters
    ----------
    scheme : Optional[PseudoSteppingScheme]
        The stepping scheme. None means a constant step `pseudo_dt`.
    X : NDArrayFloat
        Successful particles with shape (:math:`N_{m}`, :math:`N_{s}`).
    G : NDArrayFloat
        Forward map output of the successful particles (augmented in Tikhonov
        mode).
    eki : EnsembleKalmanInversion
        The calibration.
    pseudo_dt : Optional[float]
        Step of the non adaptive stepping, and initial guess of :class:`Default`.
        The default is None, i.e., `eki.pseudo_dt`.
    """
    if scheme is None:
        scheme = Constant(eki.pseudo_dt if pseudo_dt is None else pseudo_dt)
    for scheme_class in type(scheme).__mro__:
        if scheme_class in _UPDATE_FUNCTIONS:
            return _UPDATE_FUNCTIONS[scheme_class](scheme, X, G, eki, pseudo_dt)
    raise TypeError(f"No update is registered for {type(scheme).__name__}!")


def adaptive_step_parameters(
    scheme: Optional[PseudoSteppingScheme],
    X: NDArrayFloat,
    G: NDArrayFloat,
    eki: EnsembleKalmanInversion,
    pseudo_dt: Optional[float] = None,
    momentum_parameter: float = 0.0,
    covariance_inflation: float = 0.0,
) -> Tuple[NDArrayFloat, float]:
    r"""
    Update the ensemble with the scheme, then apply momentum and inflation.

    .. math::
        X_{n+1} \leftarrow X_{n+1} + \lambda (X_{n+1} - X_{n}), \quad
        X_{n+1} \leftarrow X_{n+1} + c (X_{n+1} - \overline{X_{n+1}})

    Both post-processing steps are no-ops with their zero defaults.
    """
    X_new, dt = compute_update(scheme, X, G, eki, pseudo_dt)
    if momentum_parameter != 0.0:
        X_new = X_new + momentum_parameter * (X_new - X)
    X_new = inflate_ensemble_around_its_mean(X_new, 1.0 + covariance_inflation)
    return X_new, dt
