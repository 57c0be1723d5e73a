import matplotlib
matplotlib.use('Agg')

import numpy as np
import pytest

from config import config_from_dict
from events import Event, make_particles


def _synthetic_event(rng, event_id=0, n_particles=20, vertex_z=0.0,
                     multiplicity=10.0, mag_field=5.0):
    """Pions with flat pT, eta and phi, random charge, perfect TPC response."""
    pt  = rng.uniform(0.2, 1.2, n_particles)
    eta = rng.uniform(-0.7, 0.7, n_particles)
    phi = rng.uniform(-np.pi, np.pi, n_particles)
    parts = make_particles(
        px     = pt * np.cos(phi),
        py     = pt * np.sin(phi),
        pz     = pt * np.sinh(eta),
        eta    = eta,
        sign   = rng.choice([-1, 1], n_particles),
        tpc_pi = rng.normal(0.0, 0.5, n_particles),
    )
    parts['track_id'] = 1000 * event_id + np.arange(n_particles)
    return Event(event_id, vertex_z, multiplicity, mag_field, parts)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def make_event(rng):
    """Factory of synthetic pion events; keyword arguments as _synthetic_event."""
    def factory(event_id=0, **kwargs):
        return _synthetic_event(rng, event_id, **kwargs)
    return factory


@pytest.fixture
def event_stream(make_event):
    """30 events spread over three z-vertex classes, field always positive."""
    return [make_event(i, vertex_z=-5.0 + 5.0 * (i % 3), multiplicity=10.0 + i % 4)
            for i in range(30)]


@pytest.fixture
def pion_cfg():
    """All three channels, 1D output, close pair rejection with a real window."""
    return config_from_dict({
        'channels':   {'PM': True, 'PP': True, 'MM': True},
        'use_3d':     False,
        'close_pair': {'dphi_min': -0.02, 'dphi_max': 0.02,
                       'deta_min': -0.02, 'deta_max': 0.02},
        'binning':    {'kstar_bins': {'n': 40, 'min': 0.0, 'max': 2.0}},
        'l_max':      1,
    })
