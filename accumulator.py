import logging
from enum import Enum

import numpy as np

from harmonics import CorrelationContainer, EventType
import kinematics as kn

logger = logging.getLogger(__name__)


class Channel(Enum):
    """Charge combination of the pair; each one has its own container."""
    PM = 'PM'    # role 1 x role 2
    PP = 'PP'    # role 1 x role 1
    MM = 'MM'    # role 2 x role 2

    @property
    def roles(self):
        return {'PM': (1, 2), 'PP': (1, 1), 'MM': (2, 2)}[self.value]

    @property
    def identical(self):
        return self is not Channel.PM


class CorrelationAccumulator:
    """
    Turns accepted pairs into pair observables and fills the container of
    the channel. Same-event pairs get weight 1, mixed-event pairs
    cfg.mixed_weight.

    Parameters
    ----------
    cfg : PairTaskConfig
    """

    def __init__(self, cfg):
        self.frame        = cfg.frame
        self.mixed_weight = cfg.mixed_weight
        self.l_max        = cfg.l_max
        self.n_degenerate = 0
        self._mass = {1: cfg.mass(1), 2: cfg.mass(2)}

        kt_edges   = cfg.binning.kt_bins   if cfg.use_3d else None
        mult_edges = cfg.binning.mult_bins if cfg.use_3d else None
        self.containers = {
            Channel(name): CorrelationContainer(cfg.binning.kstar_bins, kt_edges, mult_edges,
                                                l_max=cfg.l_max, name=name)
            for name in cfg.enabled_channels()
        }

    def masses(self, channel):
        role_a, role_b = Channel(channel).roles
        return self._mass[role_a], self._mass[role_b]

    def container(self, channel):
        return self.containers[Channel(channel)]

    def fill(self, p1, p2, channel, event_type, multiplicity):
        """
        Parameters
        ----------
        p1, p2       : np.ndarray — aligned particle tables, p1 in the first slot
        channel      : Channel
        event_type   : EventType
        multiplicity : float — multiplicity of the (new) event

        Returns
        -------
        int — pairs filled into the container
        """
        if len(p1) == 0:
            return 0
        channel    = Channel(channel)
        event_type = EventType(event_type)
        mass1, mass2 = self.masses(channel)

        obs   = kn.frame_observables(p1, mass1, p2, mass2, self.frame)
        valid = obs['valid']
        n_bad = int(np.count_nonzero(~valid))
        if n_bad:
            self.n_degenerate += n_bad
            logger.debug("%s %s: skipped %d degenerate pairs",
                         channel.value, event_type.value, n_bad)

        weight = 1.0 if event_type is EventType.SAME else self.mixed_weight
        return self.containers[channel].fill(
            event_type,
            obs['kv'][valid], obs['cos_theta'][valid], obs['phi'][valid],
            obs['kT'][valid], multiplicity, weight)

    def compute_covariance(self, n_moments=None):
        """Covariance of numerator and denominator of every channel."""
        for cont in self.containers.values():
            for event_type in EventType:
                cont.compute_covariance(event_type, n_moments)
