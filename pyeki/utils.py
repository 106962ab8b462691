"""
Ensemble statistics and helpers shared by the EKI update rules.

@author: pyeki developers
"""

from functools import lru_cache, wraps
from typing import Union

import numpy as np
import numpy.typing as npt
import scipy as sp  # type: ignore

NDArrayFloat = npt.NDArray[np.float64]
NDArrayBool = npt.NDArray[np.bool_]


def np_cache(*args, **kwargs):
    """
    LRU cache implementation for functions whose FIRST parameter is a numpy array.

    Examples
    --------
    >>> array = np.array([[1, 2, 3], [4, 5, 6]])
    >>> @np_cache(maxsize=256)
    ... def multiply(array, factor):
    ...     print("Calculating...")
    ...     return factor*array
    >>> multiply(array, 2)
    Calculating...
    array([[ 2,  4,  6],
           [ 8, 10, 12]])
    >>> multiply(array, 2)
    array([[ 2,  4,  6],
           [ 8, 10, 12]])
    >>> multiply.cache_info()
    CacheInfo(hits=1, misses=1, maxsize=256, currsize=1)

    """

    def decorator(function):
        @wraps(function)
        def wrapper(np_array, *args, **kwargs):
            hashable_array = array_to_tuple(np_array)
            return cached_wrapper(hashable_array, *args, **kwargs)

        @lru_cache(*args, **kwargs)
        def cached_wrapper(hashable_array, *args, **kwargs):
            array = np.array(hashable_array)
            return function(array, *args, **kwargs)

        def array_to_tuple(np_array):
            """Iterates recursively."""
            try:
                return tuple(array_to_tuple(_) for _ in np_array)
            except TypeError:
                return np_array

        wrapper.cache_info = cached_wrapper.cache_info
        wrapper.cache_clear = cached_wrapper.cache_clear

        return wrapper

    return decorator


@np_cache(maxsize=16)
def get_inv(input: NDArrayFloat) -> NDArrayFloat:
    """Get the inversed matrix."""
    return np.linalg.inv(input)


def get_anomaly_matrix(ensemble: NDArrayFloat, corrected: bool = True) -> NDArrayFloat:
    r"""
    Return the zero-mean (i.e., centered) and scaled anomaly matrix of the ensemble.

    Parameters
    ----------
    ensemble: NDArrayFloat
        Ensemble of realization with shape ($N_{m}$, $N_{e}$), $N_{e}$ and $N_{m}$
        being the ensemble size and one member size respectively.
    corrected: bool
        If True, the anomalies are scaled by :math:`1/\sqrt{N_{e} - 1}` (sample
        estimator), otherwise by :math:`1/\sqrt{N_{e}}` (population estimator).
        The default is True.

    Return
    ------
    The anomaly matrix with shape ($N_{m}$, $N_{e}$).
    """
    n_ensemble = ensemble.shape[1]
    normalization = n_ensemble - 1.0 if corrected else float(n_ensemble)
    return (ensemble - np.mean(ensemble, axis=1, keepdims=True)) / np.sqrt(
        normalization
    )


def get_ensemble_variance(ensemble: NDArrayFloat) -> NDArrayFloat:
    """
    Get the given ensemble variance (diagonal terms of the covariance matrix).

    Parameters
    ----------
    ensemble : NDArrayFloat
        Ensemble of realization with dimensions (:math:`N_{m}, N_{e}`).

    Returns
    -------
    NDArrayFloat
        The variance as a 1d array.

    Raises
    ------
    ValueError
        If the ensemble is not a 2D matrix.
    """
    if len(ensemble.shape) != 2:
        raise ValueError("The ensemble must be a 2D matrix!")
    return np.sum(
        ((ensemble - np.mean(ensemble, axis=1, keepdims=True)) ** 2), axis=1
    ) / (ensemble.shape[1] - 1.0)  # type: ignore


def empirical_cross_covariance(
    ensemble_1: NDArrayFloat, ensemble_2: NDArrayFloat, corrected: bool = True
) -> NDArrayFloat:
    r"""
    Approximate the covariance matrix between two ensembles in the EnKF way.

    .. math::
        C_{12} = \frac{1}{N_{e} - 1} \sum_{j=1}^{N_{e}}\left(m1_{j} -
        \overline{m1}\right)\left(m2_{j}
        - \overline{m2} \right)^{T}

    With `corrected=False`, :math:`N_{e} - 1` is replaced by :math:`N_{e}`, which
    is the normalization used by the EKI update.

    Parameters
    ----------
    ensemble_1 : NDArrayFloat
        First ensemble of realization with dimensions (:math:`N_{m1}, N_{e}`).
    ensemble_2 : NDArrayFloat
        Second ensemble of realization with dimensions (:math:`N_{m2}, N_{e}`).
    corrected: bool
        Whether to use the sample (True) or population (False) normalization.

    Returns
    -------
    NDArrayFloat
        The two ensembles approximated covariance matrix.

    Examples
    --------
    >>> X = np.array([[-2.4, -0.3,  0.7],
    ...               [ 0.2,  1.1, -1.5]])
    >>> empirical_cross_covariance(X, X)
    array([[ 2.50333333, -0.99666667],
           [-0.99666667,  1.74333333]])
    >>> np.cov(X, rowvar=True, ddof=1)
    array([[ 2.50333333, -0.99666667],
           [-0.99666667,  1.74333333]])

    Raises
    ------
    ValueError
        If the ensembles are not 2D or do not have the same number of members.
    """
    is_issue = False
    if ensemble_1.ndim != 2 or ensemble_2.ndim != 2:
        is_issue = True
    elif ensemble_1.shape[1] != ensemble_2.shape[1]:  # type: ignore
        is_issue = True
    if is_issue:
        raise ValueError(
            "The ensemble should be 2D matrices with equal second dimension!"
        )
    return (
        get_anomaly_matrix(ensemble_1, corrected)
        @ get_anomaly_matrix(ensemble_2, corrected).T
    )


def construct_noise_covariance(
    noise_covariance: Union[float, NDArrayFloat], obs: NDArrayFloat
) -> NDArrayFloat:
    """
    Build the observation noise covariance matrix :math:`\\Gamma_{y}`.

    Parameters
    ----------
    noise_covariance : Union[float, NDArrayFloat]
        A positive scalar (converted to a scaled identity), a 1D array (the
        diagonal of the matrix) or a full (:math:`N_{obs}`, :math:`N_{obs}`) matrix.
    obs : NDArrayFloat
        Observation vector with dimension :math:`N_{obs}`.

    Examples
    --------
    >>> construct_noise_covariance(2.0, np.zeros(3))
    array([[2., 0., 0.],
           [0., 2., 0.],
           [0., 0., 2.]])
    """
    n_obs = obs.size
    cov = np.asarray(noise_covariance, dtype=np.float64)
    if cov.ndim == 0:
        if not float(cov) > 0.0:
            raise ValueError("A scalar noise_covariance must be strictly positive.")
        return float(cov) * np.eye(n_obs)
    error = ValueError(
        f"noise_covariance must be a 2D matrix with dimensions ({n_obs}, {n_obs})."
    )
    if cov.ndim == 1:
        if cov.size != n_obs:
            raise error
        return np.diag(cov)
    if cov.ndim != 2 or cov.shape != (n_obs, n_obs):
        raise error
    return cov


def ls_cost_function(
    pred: NDArrayFloat,
    obs: NDArrayFloat,
    cov_obs_cholesky: NDArrayFloat,
) -> NDArrayFloat:
    r"""
    Compute the least-square misfit for each ensemble member :math:`j`.

    .. math::

        \Phi_{j} = \frac{1}{2} \left(d_{j} - d_{obs} \right)^{T}\Gamma_{y}^{-1}
        \left(d_{j} - d_{obs} \right)

    Parameters
    ----------
    pred : NDArrayFloat
        Ensemble of prediction vector with shape (:math:`N_{obs}, N_{e}`), or
        single vector with shape :math:`(N_{obs},)`.
    obs : NDArrayFloat
        Vector of observed values.
    cov_obs_cholesky
        Upper Cholesky factor :math:`U` of the covariance matrix
        (:math:`\Gamma_{y} = U^{T}U`), or 1D vector of standard deviations if the
        covariance matrix is diagonal.

    Returns
    -------
    NDArrayFloat
        The objective function for each ensemble realization.

    """
    residuals: NDArrayFloat = (pred.T - obs).T
    if cov_obs_cholesky.ndim == 2:
        whitened = sp.linalg.solve_triangular(
            cov_obs_cholesky, residuals, trans="T", lower=False, check_finite=False
        )
        return 0.5 * np.sum(np.square(whitened), axis=0)
    elif cov_obs_cholesky.ndim == 1:
        if residuals.ndim == 1:
            return 0.5 * np.sum(np.square(residuals / cov_obs_cholesky))
        return 0.5 * np.square(residuals / cov_obs_cholesky.reshape(-1, 1)).sum(
            axis=0
        )
    raise ValueError("cov_obs_cholesky must be a 2D array or a 1D array.")


def inflate_ensemble_around_its_mean(
    ensemble: NDArrayFloat, inflation_factor: float
) -> NDArrayFloat:
    r"""
    Inflate the given parameter ensemble around its mean.

    .. math::
        m^{l+1}_{j} \leftarrow r^{l+1}\left(m^{l+1}_{j} - \frac{1}{N_{e}}
        \sum_{j}^{N_{e}}m^{l+1}_{j}\right)
        + \frac{1}{N_{e}}\sum_{j}^{N_{e}}m^{l+1}_{j}

    Parameters
    ----------
    ensemble: NDArrayFloat
        Ensemble of realization with dimensions (:math:`N_{m}, N_{e}`).
    inflation_factor: float
        Multiplicative factor :math:`r` applied to the anomalies. 1.0 is a no-op.

    Returns
    -------
    NDArrayFloat
        The inflated ensemble.
    """
    if not inflation_factor == 1.0:
        return inflation_factor * (
            ensemble - np.mean(ensemble, axis=1, keepdims=True)
        ) + np.mean(ensemble, axis=1, keepdims=True)
    return ensemble


def check_ensemble_size(ensemble: NDArrayFloat) -> None:
    """
    Raise if the ensemble is too small to have a full-rank covariance estimate.

    Raises
    ------
    ValueError
        If the number of members is not strictly larger than the number of
        parameters.
    """
    n_params, n_ensemble = ensemble.shape
    if n_ensemble <= n_params:
        raise ValueError(
            f"The ensemble size ({n_ensemble}) must be strictly larger than the "
            f"number of parameters ({n_params}) to estimate a non-singular "
            "parameter covariance."
        )


def volume_ratio(new_ensemble: NDArrayFloat, ensemble: NDArrayFloat) -> float:
    r"""
    Return the ratio of the ensemble covariance determinants.

    .. math::
        r = \frac{\det C^{n+1}_{\theta\theta}}{\det C^{n}_{\theta\theta}}

    Raises
    ------
    ValueError
        If the covariance of `ensemble` is singular.
    """
    det_old = float(np.linalg.det(np.atleast_2d(np.cov(ensemble, ddof=1))))
    if not det_old > 0.0:
        raise ValueError(
            "The ensemble covariance is singular (determinant "
            f"{det_old:.3e}), the ensemble has collapsed!"
        )
    det_new = float(np.linalg.det(np.atleast_2d(np.cov(new_ensemble, ddof=1))))
    return det_new / det_old


def sample_ensemble_normal(
    ensemble: NDArrayFloat,
    n_samples: int,
    rng: Union[np.random.Generator, np.random.RandomState],
) -> NDArrayFloat:
    """
    Draw members from the normal distribution fitted to an ensemble.

    Parameters
    ----------
    ensemble : NDArrayFloat
        Ensemble used to fit the distribution, shape (:math:`N_{m}, N_{e}`).
    n_samples : int
        Number of members to draw.
    rng : Union[np.random.Generator, np.random.RandomState]
        Random state.

    Returns
    -------
    NDArrayFloat
        New members with shape (:math:`N_{m}`, `n_samples`).
    """
    if ensemble.shape[1] == 0:
        raise ValueError("Cannot fit a normal distribution to an empty ensemble!")
    mean = np.mean(ensemble, axis=1)
    if ensemble.shape[1] == 1:
        cov = np.zeros((ensemble.shape[0], ensemble.shape[0]))
    else:
        cov = np.atleast_2d(np.cov(ensemble, ddof=1))
    return rng.multivariate_normal(mean, cov, size=n_samples).T
