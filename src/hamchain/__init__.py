"""Adaptive Hamiltonian Monte Carlo chains with burn-in control and variate transforms."""

__license__ = "MIT"

import hamchain.adapters
import hamchain.algorithms
import hamchain.autodiff
import hamchain.burnin
import hamchain.chains
import hamchain.convergence
import hamchain.engines
import hamchain.errors
import hamchain.integrators
import hamchain.metrics
import hamchain.posteriors
import hamchain.samples
import hamchain.states
import hamchain.systems
import hamchain.transforms
import hamchain.transitions
from hamchain.algorithms import HMCAlgorithm
from hamchain.chains import HMCChain, MCMCSpec
from hamchain.interface import HMCSampleChainsOutputs, sample_hmc_chains
from hamchain.posteriors import DensityPosterior
