import logging
import time

import numpy as np

from accumulator import CorrelationAccumulator
from combinatorics import CombinationPolicy, assign_slots, pair_indices
from config import PairTaskConfig
from harmonics import EventType
from mixing import EventBinning, MixingPool
from pair_filter import ClosePairRejection, is_clean_pair
from pid import admit_particles, resolve_species
import kinematics as kn

logger = logging.getLogger(__name__)

# QA binning of the admitted particles (per role) and of the accepted events
TRACK_QA_BINS = {
    'pt':         np.linspace(0.0, 4.0, 81),       # [GeV]
    'eta':        np.linspace(-1.0, 1.0, 41),
    'phi':        np.linspace(-np.pi, np.pi, 73),
    'nsigma_tpc': np.linspace(-5.0, 5.0, 101),
    'nsigma_tof': np.linspace(-5.0, 5.0, 101),
}
EVENT_QA_BINS = {
    'vertex_z':     np.linspace(-15.0, 15.0, 61),  # [cm]
    'multiplicity': np.linspace(0.0, 500.0, 101),
}


class SelectionQA:
    """
    1D histograms of the particles admitted to each role and of the accepted
    events. Keys are 'role<i>_<variable>' for tracks and the variable name
    for events; the nsigma histograms use the columns of the role's species.
    """

    def __init__(self, species):
        self.species = species
        self.tracks = {f'role{r}_{var}': np.zeros(len(bins) - 1, dtype=np.float64)
                       for r in (1, 2) for var, bins in TRACK_QA_BINS.items()}
        self.events = {var: np.zeros(len(bins) - 1, dtype=np.float64)
                       for var, bins in EVENT_QA_BINS.items()}

    def fill_tracks(self, role_index, parts):
        pt, _, phi = kn.get_kinematics(parts)
        tpc_col, tof_col = self.species[role_index].columns
        values = {
            'pt':         pt,
            'eta':        parts['eta'],
            'phi':        phi,
            'nsigma_tpc': parts[tpc_col],
            'nsigma_tof': parts[tof_col],
        }
        for var, bins in TRACK_QA_BINS.items():
            x = np.asarray(values[var], dtype=np.float64)
            # missing TOF is NaN and stays out of the histogram
            counts, _ = np.histogram(x[np.isfinite(x)], bins=bins)
            self.tracks[f'role{role_index}_{var}'] += counts

    def fill_event(self, event):
        for var, bins in EVENT_QA_BINS.items():
            counts, _ = np.histogram([getattr(event, var)], bins=bins)
            self.events[var] += counts


class PairTask:
    """
    One processing pass over a stream of events.

    For every accepted event:
        1. same-event pairs of every enabled channel  -> numerators
        2. pairs with the buffered events of its class -> denominators
        3. the event goes into the mixing pool
    finalize() derives the covariances once the stream is exhausted.

    Parameters
    ----------
    cfg  : PairTaskConfig — validated here, errors are raised before any event
    seed : int or None    — overrides cfg.seed for the pass random generator
    """

    def __init__(self, cfg=None, seed=None):
        self.cfg  = (cfg or PairTaskConfig()).validate()
        self.seed = self.cfg.seed if seed is None else seed
        self.rng  = np.random.default_rng(self.seed)

        self.species     = {i: resolve_species(self.cfg.role(i).pdg) for i in (1, 2)}
        self.accumulator = CorrelationAccumulator(self.cfg)
        self.cpr         = ClosePairRejection(self.cfg.close_pair) if self.cfg.close_pair.enabled else None
        self.binning     = EventBinning(self.cfg.binning.vtx_bins,
                                        self.cfg.binning.mix_mult_bins,
                                        self.cfg.binning.edge_policy)
        self.pool        = MixingPool(self.binning, self.cfg.mixing_depth)
        self.qa          = SelectionQA(self.species)

        self.counters = {
            'events_seen':     0,
            'events_accepted': 0,
            'same_pairs':      0,
            'mixed_pairs':     0,
            'cpr_rejected':    0,
            'unclean':         0,
        }
        self.finalized = False
        logger.info("Pair task: %s", self.cfg.summary())

    @property
    def containers(self):
        return self.accumulator.containers

    # ── particle selection ─────────────────────────────────────────────────────

    def role(self, index):
        return self.cfg.role(index)

    def select(self, event, role_index):
        """
        Particles of one role: charge, pT window, |eta| and PID of the role's
        species. A role index other than 1 or 2 raises ConfigurationError.
        """
        role  = self.cfg.role(role_index)
        parts = event.particles
        pt, _, _ = kn.get_kinematics(parts)
        mask = ((parts['sign'] == role.charge)
                & (pt > role.pt_low) & (pt < role.pt_high)
                & (np.abs(parts['eta']) < self.cfg.eta_max))
        mask &= admit_particles(parts, self.species[role_index], self.cfg.pid)
        return parts[mask]

    def _selections(self, event):
        roles = {r for ch in self.containers for r in ch.roles}
        return {r: self.select(event, r) for r in roles}

    def accepts(self, event):
        return self.cfg.mult_low < event.multiplicity < self.cfg.mult_high

    def _close(self, p1, p2, mag_field, event_type):
        if self.cpr is None:
            return np.zeros(len(p1), dtype=bool)
        close = self.cpr.is_close_pair(p1, p2, mag_field, event_type.value)
        self.counters['cpr_rejected'] += int(np.count_nonzero(close))
        return close

    # ── same event ─────────────────────────────────────────────────────────────

    def process_same_event(self, event, selections=None):
        """Fill the numerators with the pairs of one event."""
        if selections is None:
            selections = self._selections(event)
        n_filled = 0

        for channel in self.containers:
            role_a, role_b = channel.roles
            parts_a, parts_b = selections[role_a], selections[role_b]

            if channel.identical:
                i, j = pair_indices(len(parts_a), len(parts_a), CombinationPolicy.STRICT_UPPER)
                # which of two identical particles is 'first' is decided at random
                i, j = assign_slots(i, j, self.rng)
            else:
                i, j = pair_indices(len(parts_a), len(parts_b), CombinationPolicy.FULL_CROSS)
            p1, p2 = parts_a[i], parts_b[j]

            keep  = ~self._close(p1, p2, event.mag_field, EventType.SAME)
            clean = is_clean_pair(p1, p2)
            self.counters['unclean'] += int(np.count_nonzero(keep & ~clean))
            keep &= clean

            n_filled += self.accumulator.fill(p1[keep], p2[keep], channel,
                                              EventType.SAME, event.multiplicity)

        self.counters['same_pairs'] += n_filled
        return n_filled

    # ── mixed events ───────────────────────────────────────────────────────────

    def process_mixed_event(self, event, selections=None):
        """
        Fill the denominators with pairs between the event and the buffered
        events of its class. The new event provides the first particle, the
        field for the close pair rejection and the multiplicity. Priors
        inserted by process() carry their selections; others are selected again.
        """
        if selections is None:
            selections = self._selections(event)
        n_filled = 0

        for _, prior, prior_sel in self.pool.windowed_pairs(event, with_payload=True):
            if prior_sel is None:
                prior_sel = self._selections(prior)
            for channel in self.containers:
                role_a, role_b = channel.roles
                parts_a, parts_b = selections[role_a], prior_sel[role_b]

                i, j = pair_indices(len(parts_a), len(parts_b), CombinationPolicy.FULL_CROSS)
                p1, p2 = parts_a[i], parts_b[j]
                keep = ~self._close(p1, p2, event.mag_field, EventType.MIXED)

                n_filled += self.accumulator.fill(p1[keep], p2[keep], channel,
                                                  EventType.MIXED, event.multiplicity)

        self.counters['mixed_pairs'] += n_filled
        return n_filled

    # ── driver ─────────────────────────────────────────────────────────────────

    def process(self, event):
        """Same event, mixing, then insertion into the pool. False if rejected."""
        if self.finalized:
            raise RuntimeError("Pass already finalized; start a new PairTask")

        self.counters['events_seen'] += 1
        if not self.accepts(event):
            logger.debug("event %s rejected: multiplicity %.1f outside (%g, %g)",
                         event.event_id, event.multiplicity,
                         self.cfg.mult_low, self.cfg.mult_high)
            return False

        self.counters['events_accepted'] += 1
        selections = self._selections(event)
        self.qa.fill_event(event)
        for role_index, parts in selections.items():
            self.qa.fill_tracks(role_index, parts)

        self.process_same_event(event, selections)
        self.process_mixed_event(event, selections)
        self.pool.insert(event, selections)
        return True

    def finalize(self):
        """Covariances of all containers, from the final sums. Only once."""
        if self.finalized:
            return self
        self.accumulator.compute_covariance(self.cfg.n_moments)
        self.finalized = True

        c = self.counters
        logger.info("Pass done: %d/%d events accepted, %d same-event and %d mixed-event "
                    "pairs, %d close pairs rejected, %d unclean",
                    c['events_accepted'], c['events_seen'], c['same_pairs'],
                    c['mixed_pairs'], c['cpr_rejected'], c['unclean'])
        logger.info("Mixing: %s", self.pool.stats)
        if self.accumulator.n_degenerate:
            logger.info("Skipped %d degenerate pairs", self.accumulator.n_degenerate)
        return self


def run_pass(events, cfg=None, seed=None, max_events=None):
    """
    Process an iterable of Event and return the finalized PairTask.

    Parameters
    ----------
    events     : iterable of Event, in arrival order
    cfg        : PairTaskConfig
    seed       : int or None — random seed of the pass
    max_events : int or None — stop after this many events
    """
    task  = PairTask(cfg, seed)
    every = max(task.cfg.progress_every, 1)
    t0    = time.time()

    for ievt, event in enumerate(events):
        if max_events is not None and ievt >= max_events:
            break
        if ievt % every == 0:
            logger.info("Processing event %d  (%.1f s)", ievt, time.time() - t0)
        task.process(event)

    return task.finalize()
