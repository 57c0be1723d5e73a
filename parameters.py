
import numpy as np
# Default settings of the pair task. Everything that has to agree between nodes
# (bin edges, harmonic order, masses) lives here so the merged analysis can check it.

# ── particle species ───────────────────────────────────────────────────────────

# Masses [GeV] used as fixed hypotheses for the pair kinematics, keyed by |PDG|.
SPECIES_MASS = {
    2212: 0.938272,
    211:  0.139570,
    321:  0.493677,
}

# ── particle roles ─────────────────────────────────────────────────────────────
# Role 1 and role 2 are the two particle partitions of the task.
# For identical pions of both charges: role 1 = pi+, role 2 = pi-.
ROLE_ONE = {
    'pdg':     211,
    'charge':  1,
    'pt_low':  0.14,   # [GeV]
    'pt_high': 1.5,
}
ROLE_TWO = {
    'pdg':     211,
    'charge':  -1,
    'pt_low':  0.14,
    'pt_high': 1.5,
}
ETA_MAX = 0.8          # |eta| cut, same for both roles

# ── PID ────────────────────────────────────────────────────────────────────────
# Below TOF_P_MIN only the TPC is used, above it TPC and TOF are combined in quadrature.
TOF_P_MIN           = 0.5   # [GeV]
NSIGMA_TPC_MAX      = 3.0
NSIGMA_COMBINED_MAX = 3.0

# Kaon momentum bands: (p_low, p_high, |nsigma_TPC| max, |nsigma_TOF| max or None)
KAON_BANDS = [
    (0.00, 0.30,   3.0, None),
    (0.30, 0.45,   2.0, None),
    (0.45, 0.55,   1.0, None),
    (0.55, 1.50,   3.0, 3.0),
    (1.50, np.inf, 3.0, 2.0),
]

# ── event selection and mixing ─────────────────────────────────────────────────
MULT_LOW    = 0.0
MULT_HIGH   = 25000.0
MIXING_DEPTH = 5

# Mixing classes: z-vertex [cm] x multiplicity.
VTX_BINS  = np.linspace(-10.0, 10.0, 11)            # 2 cm wide
MULT_BINS = np.array([0., 4., 8., 12., 16., 20., 24., 28., 32., 36., 40.,
                      44., 48., 52., 56., 60., 64., 68., 72., 76., 80.,
                      84., 88., 92., 96., 100., 200., 99999.])

# What happens to events outside the mixing classes: 'clamp' or 'drop'.
EDGE_POLICY = 'clamp'

# ── close pair rejection ───────────────────────────────────────────────────────
CPR_ENABLED        = True
CPR_PER_RADIUS     = False
CPR_CHOSEN_RADIUS  = 0.80     # [m]
CPR_DPHI_MIN       = 0.0
CPR_DPHI_MAX       = 0.0
CPR_DETA_MIN       = 0.0
CPR_DETA_MAX       = 0.0

# TPC radii [m] used when the rejection is evaluated radius by radius.
TPC_RADII = np.array([0.85, 1.05, 1.25, 1.45, 1.65, 1.85, 2.05, 2.25, 2.45])

# ── correlation binning ────────────────────────────────────────────────────────
N_KSTAR    = 60
KSTAR_MAX  = 0.3
KSTAR_BINS = np.linspace(0.0, KSTAR_MAX, N_KSTAR + 1)    # [GeV]

# Differential (3D) mode: k* x kT x multiplicity
KT_BINS_3D   = np.array([0.1, 0.2, 0.3, 0.4])
MULT_BINS_3D = np.array([0.0, 200.0])

# Spherical harmonics up to L_MAX: (L_MAX+1)^2 moments per cell.
L_MAX = 2

# 'LCMS' (longitudinally co-moving system) or 'PRF' (pair rest frame)
FRAME = 'LCMS'

# Weight of mixed-event pairs in the denominator.
MIXED_WEIGHT = 1.0

# ── channels ───────────────────────────────────────────────────────────────────
# PM: role 1 x role 2 (opposite sign), PP: role 1 x role 1, MM: role 2 x role 2
CHANNELS = {
    'PM': False,
    'PP': True,
    'MM': True,
}
USE_3D = True

RANDOM_SEED = 42
PROGRESS_EVERY = 1000
