"""
EKI update rules.

Both rules move the ensemble of unconstrained parameters :math:`X` toward values
whose forward map output :math:`G` matches the observations :math:`y`.

The Iglesias 2013 update computes

 X + C_XG @ inv(C_GG + Γy / Δt) @ (y + ξ - G)

where C_XG = empirical_cross_covariance(X, G, corrected=False)
      C_GG = empirical_cross_covariance(G, G, corrected=False)
      ξ ~ N(0, Γy / Δt)

and the Kovachki 2018 update is the explicit discretization of the EKI gradient
flow with an adaptive step based on the norm of the transformation matrix.

@author: pyeki developers
"""

from typing import Optional, Tuple, Union

import numpy as np
import scipy as sp  # type: ignore

from pyeki.utils import NDArrayFloat, empirical_cross_covariance, get_inv

# pylint: disable=C0103 # Does not conform to snake_case naming style

KOVACHKI_EPSILON: float = 1e-10


def perturb_observations(
    obs: NDArrayFloat,
    cov_obs_cholesky: NDArrayFloat,
    pseudo_dt: float,
    n_ensemble: int,
    rng: Union[np.random.Generator, np.random.RandomState],
    noise_mean: Optional[NDArrayFloat] = None,
) -> NDArrayFloat:
    r"""
    Return the perturbed observations :math:`y + \xi_{j}`.

    .. math::
        \xi_{j} \sim \mathcal{N}(\mu, \Delta t^{-1} \Gamma_{y}),
        \textrm{for } j=1,2,...,N_{e}.

    Notes
    -----
    If :math:`\Gamma_{y} = U^{T} U` by the cholesky factorization, then drawing
    :math:`\xi` from a zero centered normal means that :math:`\xi = U^{T} z`, where
    :math:`z \sim \mathcal{N}(0, I)`. Therefore, scaling :math:`\Gamma_{y}` by
    :math:`1/\Delta t` is equivalent to scaling :math:`U` by
    :math:`1/\sqrt{\Delta t}`.

    Parameters
    ----------
    obs : NDArrayFloat
        Observation vector with dimension :math:`N_{obs}`.
    cov_obs_cholesky : NDArrayFloat
        Upper Cholesky factor of :math:`\Gamma_{y}`.
    pseudo_dt : float
        Pseudo time step :math:`\Delta t`.
    n_ensemble : int
        Number of perturbations to draw.
    rng : Union[np.random.Generator, np.random.RandomState]
        Random state.
    noise_mean : Optional[NDArrayFloat]
        Mean of the perturbations. The default is None, i.e., zero.
    """
    shape = (obs.size, n_ensemble)
    noise = cov_obs_cholesky.T @ rng.normal(size=shape) / np.sqrt(pseudo_dt)
    if noise_mean is not None:
        noise += np.reshape(noise_mean, (-1, 1))
    return obs.reshape(-1, 1) + noise


def iglesias_2013_update(
    X: NDArrayFloat,
    G: NDArrayFloat,
    obs: NDArrayFloat,
    cov_obs: NDArrayFloat,
    pseudo_dt: float = 1.0,
    rng: Optional[Union[np.random.Generator, np.random.RandomState]] = None,
    cov_obs_cholesky: Optional[NDArrayFloat] = None,
    is_perturbed: bool = True,
    noise_mean: Optional[NDArrayFloat] = None,
) -> NDArrayFloat:
    r"""
    Perturbed-observation EKI update of :cite:t:`iglesiasEnsembleKalmanMethods2013`.

    .. math::
       \theta^{n+1}_{j} = \theta^{n}_{j} + C^{n}_{\theta g}\left(C^{n}_{gg}
       + \Delta t^{-1} \Gamma_{y}\right)^{-1} \left(y + \xi_{j} - g^{n}_{j} \right),
       \textrm{for } j=1,2,...,N_{e}.

    Notes
    -----
    To avoid the inversion of :math:`\left(C^{n}_{gg}+\Delta t^{-1}\Gamma_{y}\right)`,
    the product is solved linearly as :math:`Ax = b`.

    Parameters
    ----------
    X : NDArrayFloat
        Ensemble of parameters with shape (:math:`N_{m}`, :math:`N_{e}`).
    G : NDArrayFloat
        Forward map output with shape (:math:`N_{obs}`, :math:`N_{e}`).
    obs : NDArrayFloat
        Observation vector with dimension :math:`N_{obs}`.
    cov_obs : NDArrayFloat
        Noise covariance matrix :math:`\Gamma_{y}`.
    pseudo_dt : float
        Pseudo time step :math:`\Delta t`. The default is 1.0.
    rng : Optional[Union[np.random.Generator, np.random.RandomState]]
        Random state used for the perturbations. Required if `is_perturbed`.
    cov_obs_cholesky : Optional[NDArrayFloat]
        Upper Cholesky factor of :math:`\Gamma_{y}`. Computed if not provided.
    is_perturbed : bool
        Whether to perturb the observations. If False, the update is
        deterministic. The default is True.
    noise_mean : Optional[NDArrayFloat]
        Mean of the perturbations. The default is None, i.e., zero.

    Returns
    -------
    NDArrayFloat
        The updated ensemble of parameters.
    """
    if X.shape[1] != G.shape[1]:
        raise ValueError(
            f"X and G must have the same number of members ({X.shape[1]} != "
            f"{G.shape[1]})!"
        )
    n_ensemble = G.shape[1]
    scaled_cov_obs = cov_obs / pseudo_dt

    if is_perturbed:
        if rng is None:
            raise ValueError("A random state is required to perturb observations!")
        if cov_obs_cholesky is None:
            cov_obs_cholesky = sp.linalg.cholesky(cov_obs, lower=False)
        obs_perturbed = perturb_observations(
            obs, cov_obs_cholesky, pseudo_dt, n_ensemble, rng, noise_mean
        )
    else:
        obs_perturbed = np.repeat(obs.reshape(-1, 1), n_ensemble, axis=1)
        if noise_mean is not None:
            obs_perturbed += np.reshape(noise_mean, (-1, 1))

    C_XG = empirical_cross_covariance(X, G, corrected=False)
    C_GG = empirical_cross_covariance(G, G, corrected=False)

    tmp = sp.linalg.solve(C_GG + scaled_cov_obs, obs_perturbed - G, assume_a="pos")
    return X + C_XG @ tmp


def kovachki_2018_update(
    X: NDArrayFloat,
    G: NDArrayFloat,
    obs: NDArrayFloat,
    cov_obs: NDArrayFloat,
    initial_step_size: float = 1.0,
) -> Tuple[NDArrayFloat, float]:
    r"""
    Adaptive EKI update of :cite:t:`kovachkiEnsembleKalmanInversion2019`.

    The transformation matrix is

    .. math::
        D_{ij} = \left\langle g_{i} - \overline{g},
        \Gamma_{y}^{-1}\left(g_{j} - y\right)\right\rangle

    the step is :math:`\Delta t = \Delta t_{0} / (\lVert D \rVert_{F} + \epsilon)`
    and the update reads :math:`X^{n+1} = X^{n} - \frac{\Delta t}{N_{e}} X^{n} D`.

    Returns
    -------
    Tuple[NDArrayFloat, float]
        The updated ensemble and the step taken.
    """
    n_ensemble = X.shape[1]
    g_mean = np.mean(G, axis=1, keepdims=True)
    cov_obs_inv = get_inv(cov_obs)

    D = (G - g_mean).T @ cov_obs_inv @ (G - obs.reshape(-1, 1))

    pseudo_dt = initial_step_size / (np.linalg.norm(D, ord="fro") + KOVACHKI_EPSILON)
    return X - (pseudo_dt / n_ensemble) * X @ D, float(pseudo_dt)


def augment_observations(obs: NDArrayFloat, prior_mean: NDArrayFloat) -> NDArrayFloat:
    """Stack the prior mean below the observations (Tikhonov regularization)."""
    return np.concatenate([obs, np.ravel(prior_mean)])


def augment_noise_covariance(
    cov_obs: NDArrayFloat, prior_cov: NDArrayFloat
) -> NDArrayFloat:
    """Return the block diagonal covariance of observations and prior."""
    return sp.linalg.block_diag(cov_obs, np.atleast_2d(prior_cov))


def augment_forward_map_output(G: NDArrayFloat, X: NDArrayFloat) -> NDArrayFloat:
    """Stack the parameters below the forward map output (Tikhonov regularization)."""
    return np.vstack([G, X])
