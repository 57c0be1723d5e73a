import numpy as np

from config import ClosePairConfig
from parameters import TPC_RADII
import kinematics as kn

# QA binning of the delta-eta / delta-phi* maps
QA_DETA_BINS = np.linspace(-0.15, 0.15, 61)
QA_DPHI_BINS = np.linspace(-0.15, 0.15, 61)


def map_ang_mpitopi(x):
    """Map angle to [-pi, pi)."""
    return ((x + np.pi) % (2 * np.pi)) - np.pi


def phi_star(parts, mag_field, radius):
    """
    Azimuth of the track helix at a transverse radius.

        phi*(R) = phi - arcsin( 0.3 q B R / (2 pT) )

    with B in Tesla (mag_field is in kG), R in m, pT in GeV. Tracks that curl
    up before reaching R get NaN.

    Returns np.ndarray shape (n_particles,) for scalar radius, or
    (n_particles, n_radii) for an array of radii.
    """
    pt, _, phi = kn.get_kinematics(parts)
    q   = parts['sign'].astype(np.float64)
    b_t = 0.1 * mag_field
    radius = np.asarray(radius, dtype=np.float64)

    with np.errstate(divide='ignore', invalid='ignore'):
        arg = 0.3 * q[..., None] * b_t * radius / (2.0 * pt[..., None])
        out = phi[..., None] - np.arcsin(arg)
    out = np.where(np.abs(arg) <= 1.0, out, np.nan)
    return out[:, 0] if radius.ndim == 0 else out


class ClosePairRejection:
    """
    Reject pairs whose tracks are too close in (delta-eta, delta-phi*),
    i.e. merged or split in the detector.

    A pair is close if delta-phi* falls in (dphi_min, dphi_max) and delta-eta in
    (deta_min, deta_max), evaluated at the chosen radius or, with
    per_radius=True, at any of the TPC radii.
    """

    def __init__(self, cfg=None, fill_qa=True):
        cfg = cfg or ClosePairConfig()
        self.dphi_min   = cfg.dphi_min
        self.dphi_max   = cfg.dphi_max
        self.deta_min   = cfg.deta_min
        self.deta_max   = cfg.deta_max
        self.per_radius = cfg.per_radius
        self.radii      = TPC_RADII if cfg.per_radius else np.array([cfg.chosen_radius])
        self.fill_qa    = fill_qa

        # (event type, before/after) -> 2D histogram of delta-eta vs delta-phi*
        shape = (len(QA_DETA_BINS) - 1, len(QA_DPHI_BINS) - 1)
        self.qa = {(evt, stage): np.zeros(shape, dtype=np.float64)
                   for evt in ('same', 'mixed') for stage in ('before', 'after')}

    def deltas(self, p1, p2, mag_field):
        """delta-eta (n_pairs,) and delta-phi* (n_pairs, n_radii)."""
        deta = p1['eta'].astype(np.float64) - p2['eta']
        dphi = map_ang_mpitopi(phi_star(p1, mag_field, self.radii)
                               - phi_star(p2, mag_field, self.radii))
        return deta, dphi

    def is_close_pair(self, p1, p2, mag_field, event_type='same'):
        """
        Parameters
        ----------
        p1, p2     : np.ndarray — aligned particle tables, one row per pair
        mag_field  : float      — field of the (first) event [kG]
        event_type : str        — 'same' or 'mixed', only selects the QA map

        Returns
        -------
        np.ndarray of bool — True means reject
        """
        deta, dphi = self.deltas(p1, p2, mag_field)
        in_eta = (deta > self.deta_min) & (deta < self.deta_max)
        # NaN comparisons are False: radii a track never reaches cannot reject
        in_phi = (dphi > self.dphi_min) & (dphi < self.dphi_max)
        close  = np.any(in_phi & in_eta[:, None], axis=1)

        if self.fill_qa and len(deta) > 0:
            # QA maps use delta-phi* averaged over the radii the pair reaches
            finite = np.isfinite(dphi)
            with np.errstate(divide='ignore', invalid='ignore'):
                dphi_avg = np.where(finite, dphi, 0.0).sum(axis=1) / finite.sum(axis=1)
            self._fill_qa(event_type, 'before', deta, dphi_avg)
            self._fill_qa(event_type, 'after', deta[~close], dphi_avg[~close])
        return close

    def _fill_qa(self, event_type, stage, deta, dphi):
        ok = np.isfinite(deta) & np.isfinite(dphi)
        counts, _, _ = np.histogram2d(deta[ok], dphi[ok],
                                      bins=(QA_DETA_BINS, QA_DPHI_BINS))
        self.qa[(event_type, stage)] += counts


def is_clean_pair(p1, p2):
    """False where the two rows come from the same detector track."""
    return p1['track_id'] != p2['track_id']
