"""Type aliases."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeAlias

from numpy import number
from numpy.random import Generator, SeedSequence
from numpy.typing import ArrayLike

from hamchain.utils import LogRepFloat

ScalarLike: TypeAlias = bool | int | float | LogRepFloat | number
"""Scalar like objects."""

OptionalLADJ: TypeAlias = float | None
"""Log absolute Jacobian determinant value or `None` if undefined."""

SeedLike: TypeAlias = int | SeedSequence | Generator
"""Objects a reproducible random number stream can be derived from."""

TransitionStatistics: TypeAlias = dict[str, ScalarLike]
"""Dictionary of statistics computed by :py:meth:`hamchain.engines.HMCEngine.step`"""

AdaptationStatisticFunction: TypeAlias = Callable[[TransitionStatistics], float]
"""Function returning adaptation statistic given dictionary of transition statistics."""

AdapterState: TypeAlias = dict[str, Any]
"""Dictionary defining current state of an :py:class:`hamchain.adapters.Adapter`."""

ScalarFunction: TypeAlias = Callable[[ArrayLike], ScalarLike]
"""Function taking an array-like input and returning a scalar-like output."""

GradientFunction: TypeAlias = Callable[
    [ArrayLike], ArrayLike | tuple[ArrayLike, ScalarLike]
]
"""Function returning the gradient of a scalar-valued function.

May optionally also return scalar-like value of function.
"""

SampleCallback: TypeAlias = Callable[[int, Any], None]
"""Callback invoked with a checkpoint level and the chain or tuner it concerns.

Level 1 signals that a new accepted sample or tuning statistic is available.
"""

TerminationCriterion: TypeAlias = Callable[[Any, Any, Any, ArrayLike], bool]
"""Function computing whether a trajectory tree should stop being expanded."""
