"""
Purpose
=======

**pyeki** is an open-source, and object-oriented library that provides
an implementation of the Ensemble Kalman Inversion (EKI) for the calibration of
closure parameters of ocean turbulence models against observations. It comes with
adaptive pseudo time stepping schemes, Tikhonov regularization, and the
detection and resampling of failed forward model runs.

The following functionalities are directly provided on module-level.

Classes
=======

.. autosummary::
   :toctree: _autosummary

   EnsembleKalmanInversion
   IterationSummary

Pseudo stepping schemes
=======================

.. autosummary::
   :toctree: _autosummary

   Constant
   Default
   ConstantConvergence
   Kovachki2018
   Kovachki2018InitialConvergenceThreshold
   Chada2021
   GPLineSearch
   Iglesias2021
   register_pseudo_stepping
   get_pseudo_stepping

Failed particles
================

.. autosummary::
   :toctree: _autosummary

   NormExceedsMedian
   Resampler
   FullEnsembleDistribution
   SuccessfulEnsembleDistribution

Parameters and priors
=====================

.. autosummary::
   :toctree: _autosummary

   FreeParameters
   NormalPrior
   LogNormalPrior
   ScaledLogitNormalPrior
   lognormal_with_mean_std

Update rules
============

.. autosummary::
   :toctree: _autosummary

   iglesias_2013_update
   kovachki_2018_update

Objective functions
===================

.. autosummary::
   :toctree: _autosummary

    ls_cost_function
    eki_objective

Covariance approximation
========================

.. autosummary::
   :toctree: _autosummary

    get_anomaly_matrix
    get_ensemble_variance
    empirical_cross_covariance
    inflate_ensemble_around_its_mean
    volume_ratio

"""

from .__about__ import __author__, __version__
from .eki import EnsembleKalmanInversion
from .inversion import iglesias_2013_update, kovachki_2018_update
from .parameters import (
    FreeParameters,
    LogNormalPrior,
    NormalPrior,
    ScaledLogitNormalPrior,
    lognormal_with_mean_std,
)
from .pseudo_stepping import (
    Chada2021,
    Constant,
    ConstantConvergence,
    Default,
    GPLineSearch,
    Iglesias2021,
    Kovachki2018,
    Kovachki2018InitialConvergenceThreshold,
    PseudoSteppingScheme,
    get_pseudo_stepping,
    register_pseudo_stepping,
)
from .resampling import (
    FullEnsembleDistribution,
    NormExceedsMedian,
    Resampler,
    SuccessfulEnsembleDistribution,
)
from .summary import IterationSummary, eki_objective
from .utils import (
    empirical_cross_covariance,
    get_anomaly_matrix,
    get_ensemble_variance,
    inflate_ensemble_around_its_mean,
    ls_cost_function,
    volume_ratio,
)

__all__ = [
    "__version__",
    "__author__",
    "EnsembleKalmanInversion",
    "IterationSummary",
    "PseudoSteppingScheme",
    "Constant",
    "Default",
    "ConstantConvergence",
    "Kovachki2018",
    "Kovachki2018InitialConvergenceThreshold",
    "Chada2021",
    "GPLineSearch",
    "Iglesias2021",
    "register_pseudo_stepping",
    "get_pseudo_stepping",
    "NormExceedsMedian",
    "Resampler",
    "FullEnsembleDistribution",
    "SuccessfulEnsembleDistribution",
    "FreeParameters",
    "NormalPrior",
    "LogNormalPrior",
    "ScaledLogitNormalPrior",
    "lognormal_with_mean_std",
    "iglesias_2013_update",
    "kovachki_2018_update",
    "ls_cost_function",
    "eki_objective",
    "get_anomaly_matrix",
    "get_ensemble_variance",
    "empirical_cross_covariance",
    "inflate_ensemble_around_its_mean",
    "volume_ratio",
]
