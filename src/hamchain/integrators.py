"""Symplectic integrators for simulation of Hamiltonian dynamics."""

from __future__ import annotations

from typing import TYPE_CHECKING

from hamchain.errors import AdaptationError

if TYPE_CHECKING:
    from typing import Optional

    from numpy.random import Generator

    from hamchain.states import ChainState
    from hamchain.systems import System


class LeapfrogIntegrator:
    r"""Leapfrog integrator for Hamiltonian systems with tractable component flows.

    The overall integrator step :math:`\Psi` is defined by the symmetric composition

    .. math::

        \Psi(t) = \Phi_1(t/2) \circ \Phi_2(t) \circ \Phi_1(t/2)

    where :math:`\Phi_1` and :math:`\Phi_2` are the exact flow maps associated with the
    Hamiltonian components :math:`h_1` and :math:`h_2` respectively. For a separable
    Hamiltonian this is the classic (position) Störmer-Verlet method.

    References:

      1. Leimkuhler, B., & Reich, S. (2004). Simulating Hamiltonian Dynamics (No. 14).
         Cambridge University Press.
    """

    def __init__(self, system: System, step_size: Optional[float] = None):
        """
        Args:
            system: Hamiltonian system to integrate the dynamics of.
            step_size: Integrator time step. If set to :code:`None` it is assumed that a
                step size adapter or search will set the step size before calling the
                :py:meth:`step` method.
        """
        self.system = system
        self.step_size = step_size

    @property
    def effective_step_size(self) -> Optional[float]:
        """Step size used by the current transition."""
        return self.step_size

    def jitter(self, rng: Generator):
        """Randomize the effective step size for the next transition.

        No-op for an unjittered integrator.

        Args:
            rng: NumPy random number generator.
        """

    def reset_jitter(self):
        """Set the effective step size back to the nominal step size."""

    def step(self, state: ChainState, i_step: int = 0, n_step: int = 1) -> ChainState:
        """Perform a single integrator step from a supplied state.

        Args:
            state: System state to perform integrator step from.
            i_step: Zero-based index of the step within its trajectory.
            n_step: Number of steps in the trajectory. Together with `i_step` only
                used by integrators which temper the momentum along a trajectory.

        Returns:
            New object corresponding to stepped state.
        """
        if self.step_size is None:
            msg = (
                "Integrator `step_size` is `None`. This value should only be used if a "
                "step size adapter is being used to set the step size."
            )
            raise AdaptationError(msg)
        state = state.copy()
        self._temper(state, 2 * i_step + 1, n_step)
        self._step(state, state.dir * self.effective_step_size)
        self._temper(state, 2 * i_step + 2, n_step)
        return state

    def _temper(self, state: ChainState, i_half_step: int, n_step: int):
        pass

    def _step(self, state: ChainState, time_step: float):
        self.system.h1_flow(state, 0.5 * time_step)
        self.system.h2_flow(state, time_step)
        self.system.h1_flow(state, 0.5 * time_step)


class JitteredLeapfrogIntegrator(LeapfrogIntegrator):
    """Leapfrog integrator with a step size randomized for each transition.

    Before each transition the effective step size is set to the nominal step size
    scaled by a factor drawn uniformly from :code:`[1 - jitter_rate, 1 + jitter_rate]`,
    which avoids trajectories locking onto a resonant integration time.

    References:

      1. Neal, R.M. (2011). MCMC using Hamiltonian dynamics. Handbook of Markov Chain
         Monte Carlo, 2(11), p.2.
    """

    def __init__(
        self,
        system: System,
        step_size: Optional[float] = None,
        jitter_rate: float = 1.0,
    ):
        """
        Args:
            system: Hamiltonian system to integrate the dynamics of.
            step_size: Nominal integrator time step.
            jitter_rate: Maximum relative perturbation of the step size, in
                :code:`[0, 1]`.
        """
        super().__init__(system, step_size)
        if not 0 <= jitter_rate <= 1:
            msg = "jitter_rate must be in the interval [0, 1]."
            raise ValueError(msg)
        self.jitter_rate = jitter_rate
        self._scale = 1.0

    @property
    def effective_step_size(self) -> Optional[float]:
        if self.step_size is None:
            return None
        return self.step_size * self._scale

    def jitter(self, rng: Generator):
        self._scale = 1.0 + self.jitter_rate * (2 * rng.uniform() - 1)

    def reset_jitter(self):
        self._scale = 1.0


class TemperedLeapfrogIntegrator(LeapfrogIntegrator):
    """Leapfrog integrator tempering the momentum along a trajectory.

    Each step has two tempering points, one before and one after the leapfrog update,
    so a trajectory of `n` steps has `2 * n` points numbered from one. At each point in
    the first half of the trajectory the momentum is multiplied by
    :code:`sqrt(tempering_rate)` and at each point in the second half it is divided by
    it, so the trajectory heats up then cools down again. The resulting
    map remains reversible and volume preserving. A step taken outside of a
    trajectory of known length is treated as a trajectory of one step.

    References:

      1. Neal, R.M. (2011). MCMC using Hamiltonian dynamics. Handbook of Markov Chain
         Monte Carlo, 2(11), p.2. Section 5.7.
    """

    def __init__(
        self,
        system: System,
        step_size: Optional[float] = None,
        tempering_rate: float = 1.05,
    ):
        """
        Args:
            system: Hamiltonian system to integrate the dynamics of.
            step_size: Integrator time step.
            tempering_rate: Factor the kinetic energy is scaled by per step in the
                first half of a trajectory. Must be positive.
        """
        super().__init__(system, step_size)
        if not tempering_rate > 0:
            msg = "tempering_rate must be positive."
            raise ValueError(msg)
        self.tempering_rate = tempering_rate

    def _temper(self, state: ChainState, i_half_step: int, n_step: int):
        scale = self.tempering_rate**0.5
        if i_half_step <= n_step:
            state.mom = state.mom * scale
        else:
            state.mom = state.mom / scale
