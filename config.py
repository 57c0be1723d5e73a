"""
Run configuration of the pair task.

Defaults come from parameters.py; a YAML file can override any of them:

    role_one:   {pdg: 2212, charge: 1, pt_low: 0.5, pt_high: 4.0}
    role_two:   {pdg: 2212, charge: -1}
    pid:        {tof_p_min: 0.75}
    close_pair: {dphi_max: 0.01, deta_max: 0.01, per_radius: true}
    binning:
        kstar_bins: {n: 100, min: 0.0, max: 0.5}
        kt_bins:    [0.2, 0.4, 0.6, 1.0]
    channels:   {PM: true, PP: false, MM: false}
    l_max:      3

Everything is validated before the first event is touched, so a bad
configuration never produces a partial output.
"""
import logging
import numbers
from dataclasses import dataclass, field, fields, is_dataclass

import numpy as np
import yaml

import parameters as par
from kinematics import FRAMES

logger = logging.getLogger(__name__)

EDGE_POLICIES = ('clamp', 'drop')
CHANNEL_NAMES = ('PM', 'PP', 'MM')


class ConfigurationError(ValueError):
    """Invalid task configuration. Always fatal."""


class UnsupportedSpeciesError(ConfigurationError):
    """PDG code without an identification strategy."""


def axis_edges(definition):
    """
    Turn an axis specification into a float64 edge array.

    Accepts explicit (variable width) edges ``[e0, e1, ...]`` or a fixed-width
    definition ``{'n': 60, 'min': 0.0, 'max': 0.3}``.
    """
    if isinstance(definition, dict):
        try:
            n, lo, hi = int(definition['n']), float(definition['min']), float(definition['max'])
        except KeyError as err:
            raise ConfigurationError(
                f"Fixed-width axis needs 'n', 'min' and 'max', got {definition}") from err
        if n < 1 or hi <= lo:
            raise ConfigurationError(f"Bad fixed-width axis {definition}")
        return np.linspace(lo, hi, n + 1)

    edges = np.asarray(definition, dtype=np.float64)
    if edges.ndim != 1 or len(edges) < 2:
        raise ConfigurationError(f"Axis needs at least two edges, got {definition}")
    if np.any(np.diff(edges) <= 0):
        raise ConfigurationError(f"Axis edges must be strictly increasing: {edges}")
    return edges


@dataclass
class RoleConfig:
    pdg:     int   = 211
    charge:  int   = 1
    pt_low:  float = 0.14
    pt_high: float = 1.5


@dataclass
class PidConfig:
    tof_p_min:           float = par.TOF_P_MIN
    nsigma_tpc_max:      float = par.NSIGMA_TPC_MAX
    nsigma_combined_max: float = par.NSIGMA_COMBINED_MAX


@dataclass
class ClosePairConfig:
    enabled:       bool  = par.CPR_ENABLED
    per_radius:    bool  = par.CPR_PER_RADIUS
    chosen_radius: float = par.CPR_CHOSEN_RADIUS
    dphi_min:      float = par.CPR_DPHI_MIN
    dphi_max:      float = par.CPR_DPHI_MAX
    deta_min:      float = par.CPR_DETA_MIN
    deta_max:      float = par.CPR_DETA_MAX


@dataclass
class BinningConfig:
    kstar_bins:    np.ndarray = field(default_factory=lambda: par.KSTAR_BINS.copy())
    kt_bins:       np.ndarray = field(default_factory=lambda: par.KT_BINS_3D.copy())
    mult_bins:     np.ndarray = field(default_factory=lambda: par.MULT_BINS_3D.copy())
    vtx_bins:      np.ndarray = field(default_factory=lambda: par.VTX_BINS.copy())
    mix_mult_bins: np.ndarray = field(default_factory=lambda: par.MULT_BINS.copy())
    edge_policy:   str        = par.EDGE_POLICY


@dataclass
class PairTaskConfig:
    role_one:       RoleConfig      = field(default_factory=lambda: RoleConfig(**par.ROLE_ONE))
    role_two:       RoleConfig      = field(default_factory=lambda: RoleConfig(**par.ROLE_TWO))
    eta_max:        float           = par.ETA_MAX
    pid:            PidConfig       = field(default_factory=PidConfig)
    close_pair:     ClosePairConfig = field(default_factory=ClosePairConfig)
    binning:        BinningConfig   = field(default_factory=BinningConfig)
    mixing_depth:   int             = par.MIXING_DEPTH
    l_max:          int             = par.L_MAX
    frame:          str             = par.FRAME
    mixed_weight:   float           = par.MIXED_WEIGHT
    channels:       dict            = field(default_factory=lambda: dict(par.CHANNELS))
    use_3d:         bool            = par.USE_3D
    mult_low:       float           = par.MULT_LOW
    mult_high:      float           = par.MULT_HIGH
    seed:           int             = par.RANDOM_SEED
    progress_every: int             = par.PROGRESS_EVERY

    def role(self, index):
        """Role 1 or role 2. Anything else is a configuration error."""
        if index == 1:
            return self.role_one
        if index == 2:
            return self.role_two
        raise ConfigurationError(
            f"Wrong particle role chosen! It should be 1 or 2. It is -> {index}")

    def mass(self, index):
        return par.SPECIES_MASS[abs(self.role(index).pdg)]

    @property
    def n_moments(self):
        return (self.l_max + 1) ** 2

    def enabled_channels(self):
        return [name for name in CHANNEL_NAMES if self.channels.get(name, False)]

    def validate(self):
        self._check_types()
        for index in (1, 2):
            role = self.role(index)
            if abs(role.pdg) not in par.SPECIES_MASS:
                raise UnsupportedSpeciesError(
                    f"Role {index}: PDG code {role.pdg} has no PID strategy "
                    f"(supported: {sorted(par.SPECIES_MASS)})")
            if role.charge not in (-1, 1):
                raise ConfigurationError(
                    f"Role {index}: charge must be +1 or -1, got {role.charge}")
            if role.pt_high <= role.pt_low:
                raise ConfigurationError(
                    f"Role {index}: empty pT window [{role.pt_low}, {role.pt_high}]")

        unknown = set(self.channels) - set(CHANNEL_NAMES)
        if unknown:
            raise ConfigurationError(
                f"Unknown channels {sorted(unknown)}; expected {CHANNEL_NAMES}")
        if not self.enabled_channels():
            raise ConfigurationError("No correlation channel enabled")

        if self.mixing_depth < 1:
            raise ConfigurationError(f"mixing_depth must be >= 1, got {self.mixing_depth}")
        if self.l_max < 0:
            raise ConfigurationError(f"l_max must be >= 0, got {self.l_max}")
        if self.frame not in FRAMES:
            raise ConfigurationError(f"frame must be one of {FRAMES}, got {self.frame!r}")
        if self.binning.edge_policy not in EDGE_POLICIES:
            raise ConfigurationError(
                f"edge_policy must be one of {EDGE_POLICIES}, "
                f"got {self.binning.edge_policy!r}")
        if self.mult_high <= self.mult_low:
            raise ConfigurationError(
                f"Empty multiplicity window [{self.mult_low}, {self.mult_high}]")

        if self.eta_max <= 0:
            raise ConfigurationError(f"eta_max must be > 0, got {self.eta_max}")
        if self.mixed_weight <= 0:
            raise ConfigurationError(f"mixed_weight must be > 0, got {self.mixed_weight}")
        if self.pid.tof_p_min < 0:
            raise ConfigurationError(f"pid.tof_p_min must be >= 0, got {self.pid.tof_p_min}")
        for name in ('nsigma_tpc_max', 'nsigma_combined_max'):
            if getattr(self.pid, name) <= 0:
                raise ConfigurationError(
                    f"pid.{name} must be > 0, got {getattr(self.pid, name)}")
        cpr = self.close_pair
        if cpr.chosen_radius <= 0:
            raise ConfigurationError(
                f"close_pair.chosen_radius must be > 0, got {cpr.chosen_radius}")
        if cpr.dphi_max < cpr.dphi_min or cpr.deta_max < cpr.deta_min:
            raise ConfigurationError(
                f"close_pair window inverted: dphi ({cpr.dphi_min}, {cpr.dphi_max}), "
                f"deta ({cpr.deta_min}, {cpr.deta_max})")
        if self.progress_every < 1:
            raise ConfigurationError(f"progress_every must be >= 1, got {self.progress_every}")

        # re-run the axis checks: edges may have been assigned directly
        for f in fields(self.binning):
            if f.name != 'edge_policy':
                setattr(self.binning, f.name, axis_edges(getattr(self.binning, f.name)))
        return self

    def _check_types(self):
        """Each scalar option must have the type of its default."""
        scalars = [('', self), ('role_one.', self.role_one), ('role_two.', self.role_two),
                   ('pid.', self.pid), ('close_pair.', self.close_pair)]
        for prefix, obj in scalars:
            for f in fields(obj):
                value = getattr(obj, f.name)
                if f.type in (int, 'int'):
                    if f.name == 'seed' and value is None:
                        continue
                    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
                        raise ConfigurationError(
                            f"Option '{prefix}{f.name}' must be an integer, got {value!r}")
                elif f.type in (float, 'float'):
                    if (isinstance(value, bool) or not isinstance(value, numbers.Real)
                            or np.isnan(value)):
                        raise ConfigurationError(
                            f"Option '{prefix}{f.name}' must be a number, got {value!r}")
                elif f.type in (bool, 'bool'):
                    if not isinstance(value, (bool, np.bool_)):
                        raise ConfigurationError(
                            f"Option '{prefix}{f.name}' must be true or false, got {value!r}")
                elif f.type in (str, 'str'):
                    if not isinstance(value, str):
                        raise ConfigurationError(
                            f"Option '{prefix}{f.name}' must be a string, got {value!r}")

    def summary(self):
        r1, r2 = self.role_one, self.role_two
        return (f"roles: ({r1.pdg}, {r1.charge:+d}) x ({r2.pdg}, {r2.charge:+d})  "
                f"channels: {self.enabled_channels()}  frame: {self.frame}  "
                f"Lmax: {self.l_max}  mixing depth: {self.mixing_depth}  "
                f"3D: {self.use_3d}  CPR: {self.close_pair.enabled}")


def _update(obj, overrides, path):
    """Recursively apply a dict of overrides onto a (nested) dataclass."""
    known = {f.name for f in fields(obj)}
    for key, value in overrides.items():
        if key not in known:
            raise ConfigurationError(f"Unknown option '{path}{key}'")
        current = getattr(obj, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ConfigurationError(f"Option '{path}{key}' expects a mapping")
            _update(current, value, f"{path}{key}.")
        elif isinstance(current, np.ndarray):
            setattr(obj, key, axis_edges(value))
        elif isinstance(current, dict):
            merged = dict(current)
            merged.update(value)
            setattr(obj, key, merged)
        else:
            setattr(obj, key, value)


def config_from_dict(overrides):
    cfg = PairTaskConfig()
    _update(cfg, overrides or {}, '')
    return cfg.validate()


def load_config(yaml_path=None):
    """Defaults, optionally overridden by a YAML file, validated."""
    if yaml_path is None:
        return PairTaskConfig().validate()
    with open(yaml_path, "r") as f:
        overrides = yaml.safe_load(f) or {}
    logger.info("Loaded configuration overrides from %s", yaml_path)
    return config_from_dict(overrides)
