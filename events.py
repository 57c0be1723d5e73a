import numpy as np
from dataclasses import dataclass

# One row per particle. nsigma columns hold the detector response for each
# species hypothesis; a missing TOF measurement is stored as NaN.
PARTICLE_DTYPE = np.dtype([
    ('px',       np.float32),
    ('py',       np.float32),
    ('pz',       np.float32),
    ('eta',      np.float32),
    ('sign',     np.int8),
    ('tpc_pr',   np.float32),
    ('tof_pr',   np.float32),
    ('tpc_pi',   np.float32),
    ('tof_pi',   np.float32),
    ('tpc_k',    np.float32),
    ('tof_k',    np.float32),
    ('track_id', np.int64),
])

# Per-event record as stored in the input files; particles of event i are
# particles[first : first + n_particles].
EVENT_DTYPE = np.dtype([
    ('event_id',     np.int64),
    ('vertex_z',     np.float32),
    ('multiplicity', np.float32),
    ('mag_field',    np.float32),
    ('first',        np.int64),
    ('n_particles',  np.int32),
])


@dataclass(frozen=True, eq=False)
class Event:
    """
    One collision event.

    event_id     : int        — opaque key of the event
    vertex_z     : float      — primary vertex z [cm]
    multiplicity : float      — multiplicity / centrality estimator
    mag_field    : float      — solenoid field [kG], signed
    particles    : np.ndarray — PARTICLE_DTYPE rows
    """
    event_id:     int
    vertex_z:     float
    multiplicity: float
    mag_field:    float
    particles:    np.ndarray

    def __post_init__(self):
        self.particles.flags.writeable = False

    def __len__(self):
        return len(self.particles)

    @property
    def field_sign(self):
        return int(np.sign(self.mag_field))


def make_particles(n=0, **columns):
    """
    Build a particle table. Missing nsigma columns default to 0 (TPC) and
    NaN (TOF); missing track ids are numbered 0..n-1.
    """
    if columns:
        n = len(next(iter(columns.values())))
    parts = np.zeros(n, dtype=PARTICLE_DTYPE)
    for name in ('tof_pr', 'tof_pi', 'tof_k'):
        parts[name] = np.nan
    parts['track_id'] = np.arange(n)
    parts['sign'] = 1
    for name, values in columns.items():
        parts[name] = values
    return parts
