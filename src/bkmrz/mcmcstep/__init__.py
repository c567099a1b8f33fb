# bkmrz/src/bkmrz/mcmcstep/__init__.py
#
# Copyright (c) 2025-2026, The Bkmrz Contributors
#
# This file is part of bkmrz.
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

"""
Functions that implement the BKMR posterior MCMC initialization and update step.

Functions that do MCMC steps operate by taking as input a state, and outputting
a new state. The inputs are not modified.

The entry points are:

  - `State`: The dataclass that represents a BKMR MCMC state.
  - `init`: Creates an initial `State` from data and configurations.
  - `step`: Performs one full MCMC iteration on a `State`, returning a new `State`.
  - `Stage`: The named stages of an iteration, in order.
"""

# ruff: noqa: F401

from bkmrz.mcmcstep._gp import CollapsedLikelihood, collapsed_likelihood
from bkmrz.mcmcstep._selection import step_selection
from bkmrz.mcmcstep._state import (
    Bandwidths,
    Config,
    Counts,
    Family,
    NumericalError,
    Stage,
    State,
    chain_axes,
    init,
)
from bkmrz.mcmcstep._step import (
    STAGES,
    step,
    step_coefficients,
    step_function,
    step_hyperparameters,
    step_latent,
)
