import numpy as np
from enum import Enum

from config import PidConfig, UnsupportedSpeciesError
from parameters import KAON_BANDS
import kinematics as kn


class Species(Enum):
    """Species we can identify, keyed by |PDG|; UNSUPPORTED never passes."""
    PROTON      = 2212
    PION        = 211
    KAON        = 321
    UNSUPPORTED = 0

    @classmethod
    def from_pdg(cls, pdg):
        try:
            species = cls(abs(int(pdg)))
        except ValueError:
            return cls.UNSUPPORTED
        return species

    @property
    def columns(self):
        """Names of the (TPC, TOF) nsigma columns for this hypothesis."""
        return _NSIGMA_COLUMNS[self]


_NSIGMA_COLUMNS = {
    Species.PROTON:      ('tpc_pr', 'tof_pr'),
    Species.PION:        ('tpc_pi', 'tof_pi'),
    Species.KAON:        ('tpc_k',  'tof_k'),
    Species.UNSUPPORTED: (None, None),
}


def resolve_species(pdg):
    """Like Species.from_pdg, but an unknown code is a fatal configuration error."""
    species = Species.from_pdg(pdg)
    if species is Species.UNSUPPORTED:
        raise UnsupportedSpeciesError(f"No PID strategy for PDG code {pdg}")
    return species


# ══════════════════════════════════════════════════════════════════════════════
# Admission strategies
# ══════════════════════════════════════════════════════════════════════════════

def _two_region(mom, nsigma_tpc, nsigma_tof, cuts):
    """
    Proton and pion selection:
        |nsigma_TPC| < nsigma_tpc_max                        for p <  tof_p_min
        sqrt(nsigma_TPC^2 + nsigma_TOF^2) < nsigma_comb_max  for p >= tof_p_min
    Without a TOF signal the TPC-only rule is used at all momenta.
    """
    has_tof  = np.isfinite(nsigma_tof)
    tpc_only = np.abs(nsigma_tpc) < cuts.nsigma_tpc_max
    combined = np.hypot(np.where(has_tof, nsigma_tof, 0.0), nsigma_tpc) < cuts.nsigma_combined_max
    use_tof  = (mom >= cuts.tof_p_min) & has_tof
    return np.where(use_tof, combined, tpc_only)


def _kaon_bands(mom, nsigma_tpc, nsigma_tof, cuts):
    """
    Kaon selection in momentum bands, see parameters.KAON_BANDS. Bands that
    use TOF fall back to their TPC cut when there is no TOF signal.
    """
    has_tof = np.isfinite(nsigma_tof)
    passed  = np.zeros(np.shape(mom), dtype=bool)
    for p_low, p_high, tpc_max, tof_max in KAON_BANDS:
        in_band = (mom >= p_low) & (mom < p_high)
        ok = np.abs(nsigma_tpc) < tpc_max
        if tof_max is not None:
            ok &= ~has_tof | (np.abs(np.where(has_tof, nsigma_tof, 0.0)) < tof_max)
        passed |= in_band & ok
    return passed


def _never(mom, nsigma_tpc, nsigma_tof, cuts):
    return np.zeros(np.shape(mom), dtype=bool)


_STRATEGIES = {
    Species.PROTON:      _two_region,
    Species.PION:        _two_region,
    Species.KAON:        _kaon_bands,
    Species.UNSUPPORTED: _never,
}


def admit(species, mom, nsigma_tpc, nsigma_tof=np.nan, cuts=None):
    """
    Is a particle compatible with the species hypothesis?

    Parameters
    ----------
    species    : Species
    mom        : float or np.ndarray — total momentum [GeV]
    nsigma_tpc : float or np.ndarray — TPC nsigma for this hypothesis
    nsigma_tof : float or np.ndarray — TOF nsigma, NaN when not measured
    cuts       : PidConfig           — thresholds (defaults from parameters.py)

    Returns
    -------
    np.ndarray of bool (0-d for scalar input)
    """
    cuts = cuts or PidConfig()
    mom        = np.asarray(mom, dtype=np.float64)
    nsigma_tpc = np.asarray(nsigma_tpc, dtype=np.float64)
    nsigma_tof = np.broadcast_to(np.asarray(nsigma_tof, dtype=np.float64), mom.shape)
    return _STRATEGIES[species](mom, nsigma_tpc, nsigma_tof, cuts)


def admit_particles(parts, species, cuts=None):
    """Vectorised admission of a whole particle table."""
    if species is Species.UNSUPPORTED:
        return np.zeros(len(parts), dtype=bool)
    tpc_col, tof_col = species.columns
    _, p, _ = kn.get_kinematics(parts)
    return admit(species, p, parts[tpc_col], parts[tof_col], cuts)
