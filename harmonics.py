"""
Spherical-harmonic decomposition of pair distributions.

Every pair contributes, in its (multiplicity, kT, |k|) cell, the complex
conjugate Y*_lm(theta, phi) of the direction of k for l = 0..Lmax,
m = -l..l. Besides the moments themselves the cell keeps the sums of
products of all moment pairs, from which the covariance of the moments is
derived once all pairs are in:

    x        = [Re Y*_0, Im Y*_0, Re Y*_1, Im Y*_1, ...]     (2J,)
    S1       = sum_pairs  w   x
    S2       = sum_pairs  w^2 x x^T
    cov(S1)  = S2 - S1 S1^T / N

Nothing is normalised here; dividing by the number of events or by the
denominator happens in post_process.py.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from scipy.special import sph_harm_y

from mixing import Axis

# pairs per np.add.at call; bounds the (n, 2J, 2J) product buffer
FILL_CHUNK = 2048


class EventType(Enum):
    SAME  = 'same'
    MIXED = 'mixed'


def lm_list(l_max):
    """(l, m) in storage order."""
    return [(l, m) for l in range(l_max + 1) for m in range(-l, l + 1)]


def ylm_conj(l_max, cos_theta, phi):
    """Y*_lm for all (l, m) up to l_max — shape (n, (l_max+1)^2), complex."""
    theta = np.arccos(np.clip(cos_theta, -1.0, 1.0))
    lms   = lm_list(l_max)
    out   = np.empty((len(theta), len(lms)), dtype=np.complex128)
    for idx, (l, m) in enumerate(lms):
        out[:, idx] = np.conj(sph_harm_y(l, m, theta, phi))
    return out


def _interleave(real, imag):
    """[..., J] x 2 -> [..., 2J] as (re_0, im_0, re_1, im_1, ...)."""
    return np.stack([real, imag], axis=-1).reshape(*real.shape[:-1], 2 * real.shape[-1])


@dataclass
class MomentArrays:
    """
    Accumulators of one event type; leading shape (n_mult, n_kt, n_kstar).

    counts       : sum of weights
    entries      : number of pairs
    real, imag   : [..., J]        sum w Re Y*_lm, sum w Im Y*_lm
    second       : [..., 2J, 2J]   sum w^2 x x^T
    covariance   : [..., 2n, 2n]   set by compute_covariance()
    """
    counts:     np.ndarray
    entries:    np.ndarray
    real:       np.ndarray
    imag:       np.ndarray
    second:     np.ndarray
    covariance: Optional[np.ndarray] = None

    @classmethod
    def zeros(cls, shape, n_moments):
        shape = tuple(shape)
        return cls(
            counts  = np.zeros(shape, dtype=np.float64),
            entries = np.zeros(shape, dtype=np.int64),
            real    = np.zeros(shape + (n_moments,), dtype=np.float64),
            imag    = np.zeros(shape + (n_moments,), dtype=np.float64),
            second  = np.zeros(shape + (2 * n_moments, 2 * n_moments), dtype=np.float64),
        )

    def add(self, other):
        self.counts  += other.counts
        self.entries += other.entries
        self.real    += other.real
        self.imag    += other.imag
        self.second  += other.second
        self.covariance = None


class CorrelationContainer:
    """
    Numerator (same-event) and denominator (mixed-event) harmonic moments of
    one correlation channel.

    Parameters
    ----------
    kstar_edges : array — |k| axis
    kt_edges    : array or None — kT axis; None gives a single open bin (1D mode)
    mult_edges  : array or None — multiplicity axis; None gives a single open bin
    l_max       : int   — highest l of the decomposition
    name        : str   — channel label, only used in messages and output
    """

    def __init__(self, kstar_edges, kt_edges=None, mult_edges=None, l_max=2, name=''):
        if l_max < 0:
            raise ValueError(f"l_max must be >= 0, got {l_max}")
        self.name       = name
        self.kstar_axis = Axis(kstar_edges)
        self.kt_axis    = Axis([0.0, np.inf] if kt_edges is None else kt_edges)
        self.mult_axis  = Axis([-np.inf, np.inf] if mult_edges is None else mult_edges)
        self.l_max      = l_max
        self.lm         = lm_list(l_max)

        self.numerator   = MomentArrays.zeros(self.shape, self.n_moments)
        self.denominator = MomentArrays.zeros(self.shape, self.n_moments)

    @property
    def n_moments(self):
        return len(self.lm)

    @property
    def shape(self):
        return (self.mult_axis.n_bins, self.kt_axis.n_bins, self.kstar_axis.n_bins)

    def arrays(self, event_type):
        return self.numerator if EventType(event_type) is EventType.SAME else self.denominator

    def moment_index(self, l, m):
        return self.lm.index((l, m))

    def moment(self, event_type, l, m):
        """Complex moment sum_w Y*_lm over all cells — shape (n_mult, n_kt, n_kstar)."""
        a = self.arrays(event_type)
        i = self.moment_index(l, m)
        return a.real[..., i] + 1j * a.imag[..., i]

    # ── filling ────────────────────────────────────────────────────────────────

    def fill(self, event_type, kv, cos_theta, phi, kt, mult, weight=1.0):
        """
        Add pairs. Pairs outside any axis are not counted.

        Parameters
        ----------
        event_type       : EventType or 'same' / 'mixed'
        kv               : np.ndarray — |k| (histogram axis)
        cos_theta, phi   : np.ndarray — direction of k
        kt               : np.ndarray — pair kT
        mult             : float or np.ndarray — event multiplicity
        weight           : float or np.ndarray

        Returns
        -------
        int — number of pairs filled
        """
        a  = self.arrays(event_type)
        kv = np.asarray(kv, dtype=np.float64)
        n  = len(kv)
        kt     = np.broadcast_to(np.asarray(kt, dtype=np.float64), (n,))
        mult   = np.broadcast_to(np.asarray(mult, dtype=np.float64), (n,))
        weight = np.broadcast_to(np.asarray(weight, dtype=np.float64), (n,))

        ik = self.kstar_axis.index(kv)
        it = self.kt_axis.index(kt)
        im = self.mult_axis.index(mult)
        ok = ((ik >= 0) & (ik < self.kstar_axis.n_bins)
              & (it >= 0) & (it < self.kt_axis.n_bins)
              & (im >= 0) & (im < self.mult_axis.n_bins)
              & np.isfinite(cos_theta) & np.isfinite(phi))
        sel = np.flatnonzero(ok)

        for start in range(0, len(sel), FILL_CHUNK):
            chunk = sel[start:start + FILL_CHUNK]
            idx   = (im[chunk], it[chunk], ik[chunk])
            w     = weight[chunk]
            ylm   = ylm_conj(self.l_max, np.asarray(cos_theta)[chunk], np.asarray(phi)[chunk])
            x     = _interleave(ylm.real, ylm.imag)

            np.add.at(a.counts,  idx, w)
            np.add.at(a.entries, idx, 1)
            np.add.at(a.real,    idx, w[:, None] * ylm.real)
            np.add.at(a.imag,    idx, w[:, None] * ylm.imag)
            np.add.at(a.second,  idx, (w**2)[:, None, None] * x[:, :, None] * x[:, None, :])

        a.covariance = None
        return len(sel)

    # ── after the pass ─────────────────────────────────────────────────────────

    def compute_covariance(self, event_type, n_moments=None):
        """
        Covariance of the first n_moments harmonics in every cell, from the
        final first and second moment sums. Run once, after all pairs of the
        pass (or of all merged passes) are filled; empty cells get zeros.

        Returns
        -------
        np.ndarray shape (n_mult, n_kt, n_kstar, 2 n_moments, 2 n_moments)
        """
        n_moments = self.n_moments if n_moments is None else n_moments
        if not 1 <= n_moments <= self.n_moments:
            raise ValueError(
                f"n_moments must be in [1, {self.n_moments}] for Lmax={self.l_max}, "
                f"got {n_moments}")

        a  = self.arrays(event_type)
        d  = 2 * n_moments
        s1 = _interleave(a.real[..., :n_moments], a.imag[..., :n_moments])
        s2 = a.second[..., :d, :d]
        n  = a.entries[..., None, None].astype(np.float64)

        with np.errstate(divide='ignore', invalid='ignore'):
            cov = s2 - s1[..., :, None] * s1[..., None, :] / n
        a.covariance = np.where(n > 0, cov, 0.0)
        return a.covariance

    def same_binning(self, other):
        return (self.kstar_axis == other.kstar_axis and self.kt_axis == other.kt_axis
                and self.mult_axis == other.mult_axis and self.l_max == other.l_max)

    def merge(self, other):
        """Add another container's sums (other passes, nodes or threads)."""
        if not self.same_binning(other):
            raise ValueError(
                f"Cannot merge containers with different binning: "
                f"{self.name!r} {self.shape} Lmax={self.l_max} vs "
                f"{other.name!r} {other.shape} Lmax={other.l_max}")
        self.numerator.add(other.numerator)
        self.denominator.add(other.denominator)
        return self
