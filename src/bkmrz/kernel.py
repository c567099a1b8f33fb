# bkmrz/src/bkmrz/kernel.py
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

"""Gaussian kernel over exposures with per-dimension bandwidths.

The kernel is

    K[i, j] = exp(-sum_m r[m] * (Z[i, m] - Z[j, m]) ** 2).

The per-dimension squared distances are computed once per dataset, so that
changing a single bandwidth only requires a rank-one update of the weighted
distance, see `update_distance`.
"""

from functools import partial

import jax
from jax import numpy as jnp
from jaxtyping import Array, Float, Int, Real

MAX_BANDWIDTH: float = 1e10
"""Bandwidths are clipped to ``[0, MAX_BANDWIDTH]``."""

MAX_EXPONENT: float = 745.0
"""The weighted distance is clipped to ``[0, MAX_EXPONENT]``, beyond which the
kernel underflows to zero in double precision anyway."""


def _clip_bandwidth(r: Real[Array, '*']) -> Float[Array, '*']:
    return jnp.clip(r, 0, MAX_BANDWIDTH)


@jax.jit
def cross_squared_distances(
    Z1: Real[Array, 'n1 M'], Z2: Real[Array, 'n2 M']
) -> Float[Array, 'M n1 n2']:
    """
    Compute the squared differences between two sets of points, per dimension.

    Parameters
    ----------
    Z1
    Z2
        The exposures, with observations along the first axis.

    Returns
    -------
    ``D[m, i, j] = (Z1[i, m] - Z2[j, m]) ** 2``.
    """
    diff = Z1.T[:, :, None] - Z2.T[:, None, :]
    return jnp.square(diff)


def squared_distances(Z: Real[Array, 'n M']) -> Float[Array, 'M n n']:
    """Compute the squared differences between all pairs of rows of `Z`."""
    return cross_squared_distances(Z, Z)


@jax.jit
def weighted_distance(
    D: Float[Array, 'M n1 n2'], r: Real[Array, ' M']
) -> Float[Array, 'n1 n2']:
    """
    Sum the per-dimension squared distances weighted by the bandwidths.

    Parameters
    ----------
    D
        Per-dimension squared distances, see `cross_squared_distances`.
    r
        The effective bandwidths, 0 for excluded dimensions.

    Returns
    -------
    The exponent of the kernel, with the sign flipped.
    """
    return jnp.einsum('m,mij->ij', _clip_bandwidth(r), D)


@partial(jax.jit, static_argnames=('symmetric',))
def kernel_from_distance(
    dist: Float[Array, 'n1 n2'], *, symmetric: bool = True
) -> Float[Array, 'n1 n2']:
    """
    Compute the kernel from the weighted distance.

    Parameters
    ----------
    dist
        The weighted distance.
    symmetric
        Whether `dist` is a square matrix of distances of a set of points from
        themselves. If so, the result is forced to be exactly symmetric.

    Returns
    -------
    The kernel matrix ``exp(-dist)``.
    """
    dist = jnp.clip(dist, 0, MAX_EXPONENT)
    if symmetric:
        dist = (dist + dist.T) / 2
    return jnp.exp(-dist)


def update_distance(
    dist: Float[Array, 'n n'],
    D: Float[Array, 'M n n'],
    m: Int[Array, ''] | int,
    r_old: Float[Array, ''],
    r_new: Float[Array, ''],
) -> Float[Array, 'n n']:
    """
    Update the weighted distance when only one bandwidth changes.

    Parameters
    ----------
    dist
        The weighted distance computed with the old bandwidth.
    D
        The per-dimension squared distances.
    m
        The index of the dimension whose bandwidth changes.
    r_old
    r_new
        The effective bandwidth before and after the change.

    Returns
    -------
    The weighted distance computed with the new bandwidth.
    """
    delta = _clip_bandwidth(r_new) - _clip_bandwidth(r_old)
    return jnp.maximum(dist + delta * D[m], 0)


def gaussian_kernel(Z: Real[Array, 'n M'], r: Real[Array, ' M']) -> Float[Array, 'n n']:
    """Compute the kernel matrix of a set of points with bandwidths `r`."""
    return kernel_from_distance(weighted_distance(squared_distances(Z), r))


def cross_kernel(
    Z1: Real[Array, 'n1 M'], Z2: Real[Array, 'n2 M'], r: Real[Array, ' M']
) -> Float[Array, 'n1 n2']:
    """Compute the kernel between two sets of points with bandwidths `r`."""
    dist = weighted_distance(cross_squared_distances(Z1, Z2), r)
    return kernel_from_distance(dist, symmetric=False)
