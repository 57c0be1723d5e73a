from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from events import Event, make_particles
from mixing import Axis, EventBinning, MixingPool


def _event(event_id, vertex_z=0.0, multiplicity=10.0, mag_field=5.0):
    return Event(event_id, vertex_z, multiplicity, mag_field, make_particles(0))


class TestAxis:

    def test_index(self):
        axis = Axis([0.0, 1.0, 2.0, 4.0])
        np.testing.assert_array_equal(axis.index([-0.5, 0.0, 0.99, 1.0, 3.9, 4.0, 4.1, np.nan]),
                                      [-1, 0, 0, 1, 2, 2, 3, 3])

    def test_fixed(self):
        axis = Axis.fixed(4, 0.0, 2.0)
        assert axis.n_bins == 4
        np.testing.assert_allclose(axis.edges, [0.0, 0.5, 1.0, 1.5, 2.0])
        assert axis == Axis([0.0, 0.5, 1.0, 1.5, 2.0])


class TestEventBinning:

    @pytest.fixture
    def binning(self):
        return EventBinning([-10.0, 0.0, 10.0], [0.0, 50.0, 100.0])

    def test_bin_of(self, binning):
        assert binning.n_bins == 4
        assert binning.bin_of(-5.0, 10.0) == 0
        assert binning.bin_of(-5.0, 60.0) == 1
        assert binning.bin_of(5.0, 10.0) == 2
        assert binning.bin_of(5.0, 60.0) == 3

    def test_clamp(self, binning):
        assert binning.bin_of(-12.0, 10.0) == 0
        assert binning.bin_of(12.0, 150.0) == 3

    def test_drop(self):
        binning = EventBinning([-10.0, 0.0, 10.0], [0.0, 50.0, 100.0], edge_policy='drop')
        assert binning.bin_of(-12.0, 10.0) is None
        assert binning.bin_of(5.0, 150.0) is None
        assert binning.bin_of(5.0, 60.0) == 3

    def test_nan_never_binned(self, binning):
        assert binning.bin_of(np.nan, 10.0) is None
        assert binning.bin_of(0.0, np.nan) is None

    def test_bad_policy(self):
        with pytest.raises(ValueError):
            EventBinning([0.0, 1.0], [0.0, 1.0], edge_policy='wrap')


class TestMixingPool:

    @pytest.fixture
    def pool(self):
        return MixingPool(EventBinning([-10.0, 10.0], [0.0, 100.0]), mixing_depth=2)

    def _feed(self, pool, events):
        seen = []
        for ev in events:
            seen.append([(a.event_id, b.event_id) for a, b in pool.windowed_pairs(ev)])
            pool.insert(ev)
        return seen

    def test_window_keeps_last_events(self, pool):
        seen = self._feed(pool, [_event(i) for i in range(1, 5)])
        assert seen[0] == []
        assert seen[1] == [(2, 1)]
        assert seen[2] == [(3, 1), (3, 2)]
        assert seen[3] == [(4, 2), (4, 3)]
        assert pool.stats['evictions'] == 2

    def test_never_paired_with_itself(self, pool):
        seen = self._feed(pool, [_event(i) for i in range(10)])
        assert all(a != b for pairs in seen for a, b in pairs)

    def test_classes_do_not_mix(self):
        pool = MixingPool(EventBinning([-10.0, 0.0, 10.0], [0.0, 100.0]), mixing_depth=3)
        seen = self._feed(pool, [_event(1, -5.0), _event(2, 5.0), _event(3, -5.0)])
        assert seen == [[], [], [(3, 1)]]

    def test_field_sign_mismatch_skipped(self, pool):
        seen = self._feed(pool, [_event(1, mag_field=5.0), _event(2, mag_field=-5.0),
                                 _event(3, mag_field=5.0)])
        assert seen[1] == []
        assert seen[2] == [(3, 1)]
        assert pool.stats['field_skips'] == 2

    def test_unbinned_event_not_buffered(self):
        pool = MixingPool(EventBinning([-10.0, 10.0], [0.0, 100.0], 'drop'), mixing_depth=2)
        assert pool.insert(_event(1, vertex_z=20.0)) is None
        assert pool.windowed_pairs(_event(2, vertex_z=20.0)) == []
        assert pool.stats['unbinned'] == 1

    def test_occupancy_bounded(self, pool):
        self._feed(pool, [_event(i) for i in range(7)])
        assert pool.occupancy(0) == 2
        assert [ev.event_id for ev in pool.buffered(0)] == [5, 6]
        assert pool.events_per_bin[0] == 7

    def test_depth_must_be_positive(self):
        with pytest.raises(ValueError):
            MixingPool(EventBinning([0.0, 1.0], [0.0, 1.0]), mixing_depth=0)

    def test_payload_travels_with_prior(self, pool):
        pool.insert(_event(1), payload={'role': 1})
        (new, prior, payload), = pool.windowed_pairs(_event(2), with_payload=True)
        assert (new.event_id, prior.event_id) == (2, 1)
        assert payload == {'role': 1}
        assert [ev.event_id for ev in pool.buffered(0)] == [1]

    def test_counts_under_concurrent_use(self, pool):
        n_threads, n_events = 8, 200

        def feed(offset):
            paired = 0
            for i in range(n_events):
                ev = _event(offset + i)
                paired += len(pool.windowed_pairs(ev))
                pool.insert(ev)
            return paired

        with ThreadPoolExecutor(max_workers=n_threads) as executor:
            paired = sum(executor.map(feed, range(0, n_threads * n_events, n_events)))

        total = n_threads * n_events
        assert pool.stats['insertions'] == total
        assert pool.events_per_bin.sum() == total
        assert pool.stats['evictions'] == total - pool.mixing_depth
        assert pool.stats['pairings'] == paired
        assert pool.pairings_per_bin.sum() == paired
        assert pool.occupancy(0) == pool.mixing_depth
