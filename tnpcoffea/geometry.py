"""Angular helpers shared by every matching stage.

Both functions are elementwise and accept Python scalars, numpy arrays or
(jagged) awkward arrays, since numpy ufuncs dispatch to awkward.
"""

import numpy as np


def delta_phi(a, b, period=np.pi):
    """Return ``b - a`` wrapped into ``(-period, period]``.

    The wrap uses a full turn of ``2 * period``, so with the default period
    the result is the signed azimuthal distance on the unit circle.
    """
    return period - np.mod(period - (b - a), 2.0 * period)


def delta_r(eta1, phi1, eta2, phi2):
    """Angular separation sqrt(deta^2 + dphi^2) with periodic azimuth."""
    return np.sqrt((eta1 - eta2) ** 2 + delta_phi(phi1, phi2) ** 2)
