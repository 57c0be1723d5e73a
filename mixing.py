"""
Event classes and the event-mixing pool.

Events are sorted into classes of (z-vertex, multiplicity). Each class keeps a
FIFO of the last `mixing_depth` events; a new event is mixed with what is in
its class *before* it is inserted, so it is never paired with itself.
"""
import logging
import threading
from collections import defaultdict, deque

import numpy as np

from config import EDGE_POLICIES, axis_edges

logger = logging.getLogger(__name__)


class Axis:
    """
    Binned axis from explicit edges, a fixed-width definition {'n', 'min', 'max'}
    or Axis.fixed(n, lo, hi).
    Bins are [e_i, e_i+1); the upper edge of the last bin belongs to it.
    """

    def __init__(self, edges):
        self.edges = axis_edges(edges)

    @classmethod
    def fixed(cls, n, lo, hi):
        return cls({'n': n, 'min': lo, 'max': hi})

    @property
    def n_bins(self):
        return len(self.edges) - 1

    def index(self, values):
        """
        Raw bin index: -1 below the first edge, n_bins above the last, and
        n_bins for NaN.
        """
        values = np.asarray(values, dtype=np.float64)
        idx = np.searchsorted(self.edges, values, side='right') - 1
        idx = np.where(values == self.edges[-1], self.n_bins - 1, idx)
        return np.where(np.isnan(values), self.n_bins, idx)

    def __eq__(self, other):
        return isinstance(other, Axis) and np.array_equal(self.edges, other.edges)

    def __repr__(self):
        return f"Axis({self.n_bins} bins, [{self.edges[0]:g}, {self.edges[-1]:g}])"


class EventBinning:
    """
    Map (z-vertex, multiplicity) to a single class id, z-vertex major:

        bin = iz * n_mult + im

    edge_policy decides what happens outside the edges:
        'clamp' — use the nearest edge bin
        'drop'  — no class (None); the event is not used for mixing
    A NaN coordinate never has a class.
    """

    def __init__(self, vertex_edges, mult_edges, edge_policy='clamp'):
        if edge_policy not in EDGE_POLICIES:
            raise ValueError(f"edge_policy must be one of {EDGE_POLICIES}, got {edge_policy!r}")
        self.vertex_axis = Axis(vertex_edges)
        self.mult_axis   = Axis(mult_edges)
        self.edge_policy = edge_policy

    @property
    def n_bins(self):
        return self.vertex_axis.n_bins * self.mult_axis.n_bins

    def _axis_bin(self, axis, value):
        if np.isnan(value):
            return None
        idx = int(axis.index(value))
        if 0 <= idx < axis.n_bins:
            return idx
        if self.edge_policy == 'drop':
            return None
        return min(max(idx, 0), axis.n_bins - 1)

    def bin_of(self, vertex_z, multiplicity):
        iz = self._axis_bin(self.vertex_axis, float(vertex_z))
        im = self._axis_bin(self.mult_axis, float(multiplicity))
        if iz is None or im is None:
            return None
        return iz * self.mult_axis.n_bins + im


class MixingPool:
    """
    Per-class ring buffers of the most recent events.

    Parameters
    ----------
    binning      : EventBinning
    mixing_depth : int — maximum number of buffered events per class
    """

    def __init__(self, binning, mixing_depth=5):
        if mixing_depth < 1:
            raise ValueError(f"mixing_depth must be >= 1, got {mixing_depth}")
        self.binning      = binning
        self.mixing_depth = mixing_depth
        self._buffers     = defaultdict(lambda: deque(maxlen=self.mixing_depth))
        self._lock        = threading.Lock()

        self.stats = {
            'insertions':  0,
            'evictions':   0,
            'pairings':    0,
            'field_skips': 0,
            'unbinned':    0,
        }
        # QA: same-event classes and mixed pairings per class
        self.events_per_bin   = np.zeros(binning.n_bins, dtype=np.int64)
        self.pairings_per_bin = np.zeros(binning.n_bins, dtype=np.int64)

    def bin_of(self, event):
        return self.binning.bin_of(event.vertex_z, event.multiplicity)

    def windowed_pairs(self, event, with_payload=False):
        """
        Pair a new event with the buffered events of its class.

        Returns
        -------
        list of (event, prior) — oldest prior first, at most mixing_depth of
        them. Priors with a different field polarity are left out. With
        with_payload=True the items are (event, prior, payload), payload being
        what was passed to insert() with the prior.
        """
        ibin = self.bin_of(event)
        if ibin is None:
            return []

        pairs = []
        with self._lock:
            for prior, payload in self._buffers.get(ibin, ()):
                if prior.field_sign != event.field_sign:
                    self.stats['field_skips'] += 1
                    continue
                pairs.append((event, prior, payload) if with_payload else (event, prior))

            self.stats['pairings'] += len(pairs)
            self.pairings_per_bin[ibin] += len(pairs)
        return pairs

    def insert(self, event, payload=None):
        """
        Append to the event's class, dropping the oldest event when full.
        payload is kept alongside the event, e.g. its per-role selections.
        """
        ibin = self.bin_of(event)
        if ibin is None:
            with self._lock:
                self.stats['unbinned'] += 1
            logger.debug("event %s outside the mixing classes, not buffered",
                         event.event_id)
            return None

        with self._lock:
            buffer = self._buffers[ibin]
            if len(buffer) == self.mixing_depth:
                self.stats['evictions'] += 1
            buffer.append((event, payload))
            self.stats['insertions'] += 1
            self.events_per_bin[ibin] += 1
        return ibin

    def occupancy(self, ibin):
        with self._lock:
            return len(self._buffers.get(ibin, ()))

    def buffered(self, ibin):
        """Events currently buffered in a class, oldest first."""
        with self._lock:
            return [event for event, _ in self._buffers.get(ibin, ())]
