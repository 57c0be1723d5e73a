import numpy as np
import pytest

from config import ClosePairConfig
from events import make_particles
from pair_filter import ClosePairRejection, is_clean_pair, map_ang_mpitopi, phi_star


def _tracks(pt, phi, eta, sign, track_id=None):
    pt, phi, eta = (np.atleast_1d(np.asarray(x, dtype=float)) for x in (pt, phi, eta))
    parts = make_particles(px=pt * np.cos(phi), py=pt * np.sin(phi), pz=pt * np.sinh(eta),
                           eta=eta, sign=np.broadcast_to(sign, pt.shape))
    if track_id is not None:
        parts['track_id'] = track_id
    return parts


def test_map_angle():
    np.testing.assert_allclose(map_ang_mpitopi(np.array([0.0, np.pi / 2, 3 * np.pi / 2, -3 * np.pi / 2])),
                               [0.0, np.pi / 2, -np.pi / 2, np.pi / 2])


class TestPhiStar:

    def test_bending_direction_follows_charge(self):
        pos = _tracks(1.0, 0.5, 0.0, +1)
        neg = _tracks(1.0, 0.5, 0.0, -1)
        # B = 0.5 T, R = 1 m: arcsin(0.3 * 0.5 * 1 / 2) = 0.0751
        assert phi_star(pos, 5.0, 1.0)[0] == pytest.approx(0.5 - np.arcsin(0.075), rel=1e-5)
        assert phi_star(neg, 5.0, 1.0)[0] == pytest.approx(0.5 + np.arcsin(0.075), rel=1e-5)

    def test_field_flip_mirrors_bending(self):
        pos = _tracks(1.0, 0.5, 0.0, +1)
        neg = _tracks(1.0, 0.5, 0.0, -1)
        assert phi_star(pos, -5.0, 1.0)[0] == pytest.approx(phi_star(neg, 5.0, 1.0)[0])

    def test_curling_track_is_nan(self):
        # pT = 0.05 GeV in 0.5 T reaches at most R = 2 pT / (0.3 B) = 0.67 m
        soft = _tracks(0.05, 0.0, 0.0, +1)
        assert np.isnan(phi_star(soft, 5.0, 1.0)[0])
        assert np.isfinite(phi_star(soft, 5.0, 0.5)[0])

    def test_radius_array_shape(self):
        parts = _tracks([0.5, 0.8, 1.2], [0.0, 1.0, 2.0], [0.0, 0.1, 0.2], +1)
        assert phi_star(parts, 5.0, np.array([0.85, 1.25, 2.45])).shape == (3, 3)


class TestClosePairRejection:

    @pytest.fixture
    def window(self):
        return ClosePairConfig(dphi_min=-0.02, dphi_max=0.02, deta_min=-0.02, deta_max=0.02)

    def test_close_pair_rejected(self, window):
        cpr = ClosePairRejection(window)
        p1 = _tracks([1.0, 1.0], [0.5, 0.5], [0.10, 0.10], +1)
        p2 = _tracks([1.0, 1.0], [0.505, 1.5], [0.105, 0.105], +1)
        np.testing.assert_array_equal(cpr.is_close_pair(p1, p2, 5.0), [True, False])

    def test_eta_alone_is_not_enough(self, window):
        cpr = ClosePairRejection(window)
        p1 = _tracks(1.0, 0.5, 0.1, +1)
        p2 = _tracks(1.0, 0.5, 0.5, +1)
        assert not cpr.is_close_pair(p1, p2, 5.0)[0]

    def test_open_window_excludes_edges(self):
        cpr = ClosePairRejection(ClosePairConfig(dphi_min=0.0, dphi_max=0.0,
                                                 deta_min=0.0, deta_max=0.0))
        p = _tracks(1.0, 0.5, 0.1, +1)
        assert not cpr.is_close_pair(p, p, 5.0)[0]

    def test_opposite_charges_separate_at_large_radius(self, window):
        # same direction at the vertex, bent apart in the field
        p1 = _tracks(0.3, 0.5, 0.1, +1)
        p2 = _tracks(0.3, 0.5, 0.1, -1)
        single = ClosePairRejection(window)
        assert not single.is_close_pair(p1, p2, 5.0)[0]

        radii = ClosePairConfig(dphi_min=-0.02, dphi_max=0.02, deta_min=-0.02, deta_max=0.02,
                                per_radius=True)
        # the helices start together; at 0.85 m they are already 0.43 rad apart,
        # so no TPC radius finds them close either
        assert not ClosePairRejection(radii).is_close_pair(p1, p2, 5.0)[0]
        # without field they stay on top of each other
        assert ClosePairRejection(radii).is_close_pair(p1, p2, 0.0)[0]

    def test_qa_maps_filled(self, window):
        cpr = ClosePairRejection(window)
        p1 = _tracks([1.0, 1.0], [0.5, 0.5], [0.10, 0.10], +1)
        p2 = _tracks([1.0, 1.0], [0.505, 0.55], [0.105, 0.12], +1)
        cpr.is_close_pair(p1, p2, 5.0, event_type='mixed')
        assert cpr.qa[('mixed', 'before')].sum() == 2
        assert cpr.qa[('mixed', 'after')].sum() == 1
        assert cpr.qa[('same', 'before')].sum() == 0


def test_clean_pair():
    p1 = _tracks([1.0, 1.0], [0.0, 0.0], [0.0, 0.0], +1, track_id=[5, 6])
    p2 = _tracks([1.0, 1.0], [0.0, 0.0], [0.0, 0.0], +1, track_id=[5, 7])
    np.testing.assert_array_equal(is_clean_pair(p1, p2), [False, True])
