# bkmrz/src/bkmrz/__init__.py
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
Bayesian Kernel Machine Regression in JAX.

The entry point is `kmbayes`, which fits the model with an MCMC and returns a
`Bkmr` object with the posterior draws and prediction methods. The MCMC
building blocks are in the submodules `mcmcstep` and `mcmcloop`.
"""

# ruff: noqa: F401

from bkmrz import debug, jaxext, kernel, mcmcloop, mcmcstep, posterior
from bkmrz._version import __version__
from bkmrz.interface import Bkmr, kmbayes
