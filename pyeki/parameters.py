"""
Free parameters and their priors.

Each prior is a normal distribution in an unconstrained space together with the
bijective transformation that maps unconstrained values onto the physical
(constrained) values used by the forward model.

@author: pyeki developers
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Union

import numpy as np
from scipy._lib._util import check_random_state  # type: ignore
from scipy.special import expit, logit  # type: ignore
from scipy.stats import norm  # type: ignore

from pyeki.utils import NDArrayFloat

ArrayLike = Union[float, NDArrayFloat]


class ParameterPrior(ABC):
    """Abstract class for a parameter prior defined in unconstrained space."""

    __slots__ = ["mu", "sigma"]

    def __init__(self, mu: float = 0.0, sigma: float = 1.0) -> None:
        if not sigma > 0.0:
            raise ValueError(f"sigma ({sigma}) should be strictly positive !")
        self.mu: float = float(mu)
        self.sigma: float = float(sigma)

    def unconstrained_prior(self):
        """Return the frozen normal distribution in unconstrained space."""
        return norm(loc=self.mu, scale=self.sigma)

    @abstractmethod
    def transform_to_constrained(self, x: ArrayLike) -> ArrayLike:
        """Map unconstrained values to physical values."""
        ...  # pragma: no cover

    @abstractmethod
    def transform_to_unconstrained(self, theta: ArrayLike) -> ArrayLike:
        """Map physical values to unconstrained values."""
        ...  # pragma: no cover

    @abstractmethod
    def constrained_derivative(self, x: ArrayLike) -> ArrayLike:
        """Return the derivative of the constrained value w.r.t. the unconstrained one."""
        ...  # pragma: no cover

    def __repr__(self) -> str:
        return f"{type(self).__name__}(mu={self.mu}, sigma={self.sigma})"


class NormalPrior(ParameterPrior):
    """Normal prior, the unconstrained and constrained spaces are identical."""

    __slots__: List[str] = []

    def transform_to_constrained(self, x: ArrayLike) -> ArrayLike:
        return x

    def transform_to_unconstrained(self, theta: ArrayLike) -> ArrayLike:
        return theta

    def constrained_derivative(self, x: ArrayLike) -> ArrayLike:
        return np.ones_like(x, dtype=np.float64)


class LogNormalPrior(ParameterPrior):
    r"""Log-normal prior for positive parameters: :math:`\theta = e^{x}`."""

    __slots__: List[str] = []

    def transform_to_constrained(self, x: ArrayLike) -> ArrayLike:
        return np.exp(x)

    def transform_to_unconstrained(self, theta: ArrayLike) -> ArrayLike:
        return np.log(theta)

    def constrained_derivative(self, x: ArrayLike) -> ArrayLike:
        return np.exp(x)


def lognormal_with_mean_std(mean: float, std: float) -> LogNormalPrior:
    r"""
    Return the log-normal prior with the given constrained mean and standard deviation.

    .. math::
        \sigma^{2} = \ln\left(1 + \frac{s^{2}}{m^{2}}\right), \quad
        \mu = \ln m - \frac{\sigma^{2}}{2}

    Examples
    --------
    >>> prior = lognormal_with_mean_std(1.0, 0.5)
    >>> round(float(prior.unconstrained_prior().std()), 6)
    0.472381
    """
    if not mean > 0.0:
        raise ValueError(f"The mean ({mean}) should be strictly positive !")
    variance = np.log(1.0 + std**2 / mean**2)
    return LogNormalPrior(mu=np.log(mean) - variance / 2.0, sigma=np.sqrt(variance))


class ScaledLogitNormalPrior(ParameterPrior):
    r"""
    Logit-normal prior for parameters bounded in [lower, upper].

    .. math::
        \theta = l + \frac{u - l}{1 + e^{-x}}
    """

    __slots__ = ["lower", "upper"]

    def __init__(
        self,
        lower: float = 0.0,
        upper: float = 1.0,
        mu: float = 0.0,
        sigma: float = 1.0,
    ) -> None:
        if not upper > lower:
            raise ValueError(
                f"The upper bound ({upper}) must be larger than the lower bound "
                f"({lower})!"
            )
        super().__init__(mu=mu, sigma=sigma)
        self.lower: float = float(lower)
        self.upper: float = float(upper)

    def transform_to_constrained(self, x: ArrayLike) -> ArrayLike:
        return self.lower + (self.upper - self.lower) * expit(x)

    def transform_to_unconstrained(self, theta: ArrayLike) -> ArrayLike:
        return logit((np.asarray(theta) - self.lower) / (self.upper - self.lower))

    def constrained_derivative(self, x: ArrayLike) -> ArrayLike:
        s = expit(x)
        return (self.upper - self.lower) * s * (1.0 - s)

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(lower={self.lower}, upper={self.upper}, "
            f"mu={self.mu}, sigma={self.sigma})"
        )


class FreeParameters:
    """
    Ordered collection of named parameters to calibrate.

    Attributes
    ----------
    priors: Dict[str, ParameterPrior]
        Prior of each parameter, in calibration order.
    """

    __slots__ = ["priors"]

    def __init__(self, priors: Dict[str, ParameterPrior]) -> None:
        if len(priors) == 0:
            raise ValueError("At least one free parameter is required!")
        self.priors: Dict[str, ParameterPrior] = dict(priors)

    @property
    def names(self) -> List[str]:
        """Return the parameter names."""
        return list(self.priors.keys())

    @property
    def n_params(self) -> int:
        """Return the number of free parameters."""
        return len(self.priors)

    def unconstrained_prior(self, name: str):
        """Return the normal distribution of parameter `name` in unconstrained space."""
        return self.priors[name].unconstrained_prior()

    @property
    def unconstrained_prior_mean(self) -> NDArrayFloat:
        """Return the mean vector of the unconstrained priors."""
        return np.array([p.mu for p in self.priors.values()], dtype=np.float64)

    @property
    def unconstrained_prior_cov(self) -> NDArrayFloat:
        """Return the (diagonal) covariance matrix of the unconstrained priors."""
        return np.diag([p.sigma**2 for p in self.priors.values()])

    def sample(
        self,
        n_ensemble: int,
        random_state: Optional[
            Union[int, np.random.Generator, np.random.RandomState]
        ] = None,
    ) -> NDArrayFloat:
        """
        Draw an ensemble of unconstrained parameters from the priors.

        Returns
        -------
        NDArrayFloat
            Ensemble with shape (:math:`N_{m}`, `n_ensemble`).
        """
        rng = check_random_state(random_state)
        return np.stack(
            [
                self.unconstrained_prior(name).rvs(size=n_ensemble, random_state=rng)
                for name in self.names
            ],
            axis=0,
        )

    def _apply(self, method: str, X: NDArrayFloat) -> NDArrayFloat:
        X = np.asarray(X, dtype=np.float64)
        if X.shape[0] != self.n_params:
            raise ValueError(
                f"Expected {self.n_params} parameters along the first axis, "
                f"got {X.shape[0]}!"
            )
        return np.stack(
            [getattr(prior, method)(X[i]) for i, prior in enumerate(self.priors.values())],
            axis=0,
        )

    def transform_to_constrained(self, X: NDArrayFloat) -> NDArrayFloat:
        """Map a vector or an ensemble (first axis = parameters) to physical values."""
        return self._apply("transform_to_constrained", X)

    def transform_to_unconstrained(self, X: NDArrayFloat) -> NDArrayFloat:
        """Map physical values to unconstrained values."""
        return self._apply("transform_to_unconstrained", X)

    def constrained_jacobian(self, x: NDArrayFloat) -> NDArrayFloat:
        """Return the (diagonal) Jacobian of the constrained transform at `x`."""
        return np.diag(self._apply("constrained_derivative", np.ravel(x)))

    def to_dict(self, x: NDArrayFloat) -> Dict[str, float]:
        """Return a name -> value mapping for a single parameter vector."""
        return {name: float(value) for name, value in zip(self.names, np.ravel(x))}

    def __repr__(self) -> str:
        content = ", ".join(f"{k}={v!r}" for k, v in self.priors.items())
        return f"FreeParameters({content})"
