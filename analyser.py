import os

import numpy as np
import h5py

from harmonics import CorrelationContainer, EventType, lm_list
from pair_filter import QA_DETA_BINS, QA_DPHI_BINS
from processer import EVENT_QA_BINS, TRACK_QA_BINS
import kinematics as kn

ARRAY_NAMES = ('counts', 'entries', 'real', 'imag', 'second')
QA_GROUPS   = ('mixing', 'cpr', 'tracks', 'events')


# ══════════════════════════════════════════════════════════════════════════════
# Section 1: HDF5 output
# ══════════════════════════════════════════════════════════════════════════════

def save_hdf5(filename, task, node_id=0):
    """
    Write the correlation containers of one finalized pass, its run metadata
    and the QA histograms to an HDF5 file.

    File structure
    --------------
    /metadata/
        attrs: node_id, seed, n_events, n_events_seen, frame, l_max, lm,
               pdg, charge, masses, channels, use_3d, mixing_depth,
               mixed_weight, edge_policy, kstar_bins, kt_bins, mult_bins,
               vtx_bins, mix_mult_bins
        counters/
            attrs: pair and mixing counters of the pass

    /correlations/<channel>/
        attrs: kstar_edges, kt_edges, mult_edges — axes of the container
        same/ , mixed/
            counts     : float64 (n_mult, n_kt, n_kstar)
            entries    : int64   (n_mult, n_kt, n_kstar)
            real, imag : float64 (n_mult, n_kt, n_kstar, J)
            second     : float64 (n_mult, n_kt, n_kstar, 2J, 2J)
            covariance : float64 (n_mult, n_kt, n_kstar, 2J, 2J)

    /qa/mixing/
        events_per_bin, pairings_per_bin : int64 (n_vtx * n_mult)
    /qa/cpr/
        attrs: deta_bins, dphi_bins
        <same|mixed>_<before|after> : float64 (n_deta, n_dphi)
    /qa/tracks/
        role<1|2>_<pt|eta|phi|nsigma_tpc|nsigma_tof> : float64, admitted particles
    /qa/events/
        vertex_z, multiplicity : float64, accepted events

    Parameters
    ----------
    filename : str      — output HDF5 file path
    task     : PairTask — finalized pass
    node_id  : int      — unique integer ID of this node / job
    """
    if not task.finalized:
        task.finalize()
    cfg = task.cfg

    with h5py.File(filename, 'w') as f:

        # ── metadata group ─────────────────────────────────────────────────
        meta = f.create_group('metadata')
        meta.attrs['node_id']       = node_id
        meta.attrs['seed']          = -1 if task.seed is None else task.seed
        meta.attrs['n_events']      = task.counters['events_accepted']
        meta.attrs['n_events_seen'] = task.counters['events_seen']
        meta.attrs['frame']         = cfg.frame
        meta.attrs['l_max']         = cfg.l_max
        meta.attrs['lm']            = np.array(lm_list(cfg.l_max), dtype=np.int32)
        meta.attrs['pdg']           = np.array([cfg.role(i).pdg for i in (1, 2)], dtype=np.int32)
        meta.attrs['charge']        = np.array([cfg.role(i).charge for i in (1, 2)], dtype=np.int32)
        meta.attrs['masses']        = np.array([cfg.mass(1), cfg.mass(2)])
        meta.attrs['channels']      = cfg.enabled_channels()
        meta.attrs['use_3d']        = cfg.use_3d
        meta.attrs['mixing_depth']  = cfg.mixing_depth
        meta.attrs['mixed_weight']  = cfg.mixed_weight
        meta.attrs['edge_policy']   = cfg.binning.edge_policy

        meta.attrs['kstar_bins']    = cfg.binning.kstar_bins
        meta.attrs['kt_bins']       = cfg.binning.kt_bins
        meta.attrs['mult_bins']     = cfg.binning.mult_bins
        meta.attrs['vtx_bins']      = cfg.binning.vtx_bins
        meta.attrs['mix_mult_bins'] = cfg.binning.mix_mult_bins

        cnt = meta.create_group('counters')
        for key, value in task.counters.items():
            cnt.attrs[key] = value
        for key, value in task.pool.stats.items():
            cnt.attrs[f'mixing_{key}'] = value
        cnt.attrs['degenerate_pairs'] = task.accumulator.n_degenerate

        # ── correlation containers ─────────────────────────────────────────
        for channel, cont in task.containers.items():
            write_container(f.create_group(f'correlations/{channel.value}'), cont)

        # ── QA ─────────────────────────────────────────────────────────────
        mix = f.create_group('qa/mixing')
        mix.create_dataset('events_per_bin',   data=task.pool.events_per_bin)
        mix.create_dataset('pairings_per_bin', data=task.pool.pairings_per_bin)

        cpr = f.create_group('qa/cpr')
        cpr.attrs['deta_bins'] = QA_DETA_BINS
        cpr.attrs['dphi_bins'] = QA_DPHI_BINS
        if task.cpr is not None:
            for (evt, stage), hist in task.cpr.qa.items():
                cpr.create_dataset(f'{evt}_{stage}', data=hist,
                                   compression='gzip', compression_opts=4)

        for group, hists, bins in (('tracks', task.qa.tracks, TRACK_QA_BINS),
                                   ('events', task.qa.events, EVENT_QA_BINS)):
            sub = f.create_group(f'qa/{group}')
            for var, edges in bins.items():
                sub.attrs[f'{var}_bins'] = edges
            for key, hist in hists.items():
                sub.create_dataset(key, data=hist)


def write_container(grp, cont):
    grp.attrs['kstar_edges'] = cont.kstar_axis.edges
    grp.attrs['kt_edges']    = cont.kt_axis.edges
    grp.attrs['mult_edges']  = cont.mult_axis.edges
    grp.attrs['l_max']       = cont.l_max

    for event_type in EventType:
        arrays = cont.arrays(event_type)
        sub = grp.create_group(event_type.value)
        for key in ARRAY_NAMES:
            sub.create_dataset(key, data=getattr(arrays, key),
                               compression='gzip', compression_opts=4)
        if arrays.covariance is not None:
            sub.create_dataset('covariance', data=arrays.covariance,
                               compression='gzip', compression_opts=4)


def read_container(grp, name=''):
    cont = CorrelationContainer(grp.attrs['kstar_edges'], grp.attrs['kt_edges'],
                                grp.attrs['mult_edges'], l_max=int(grp.attrs['l_max']),
                                name=name)
    for event_type in EventType:
        sub    = grp[event_type.value]
        arrays = cont.arrays(event_type)
        for key in ARRAY_NAMES:
            setattr(arrays, key, sub[key][:])
        arrays.covariance = sub['covariance'][:] if 'covariance' in sub else None
    return cont


# ══════════════════════════════════════════════════════════════════════════════
# Section 2: HDF5 input
# ══════════════════════════════════════════════════════════════════════════════

def inspect_hdf5(filename):
    """Print the full structure of an HDF5 file."""
    with h5py.File(filename, 'r') as f:

        print(f"File: {filename}")
        print("=" * 55)

        def print_tree(name, obj):
            indent = '  ' * name.count('/')
            if isinstance(obj, h5py.Group):
                print(f"{indent}[GROUP]  /{name}")
                for k, v in obj.attrs.items():
                    print(f"{indent}  attr: {k} = {v}")
            elif isinstance(obj, h5py.Dataset):
                print(f"{indent}[DATA]   /{name}  shape={obj.shape}  dtype={obj.dtype}")

        f.visititems(print_tree)


def load_hdf5(filename):
    """
    Load the containers of one output file, together with its metadata and
    QA histograms, so the merging code does not need the run configuration.

    Returns
    -------
    containers : dict — channel name -> CorrelationContainer
    meta       : dict — /metadata attributes, plus 'counters'
    qa         : dict — QA_GROUPS name -> histograms (empty if not stored)

    Raises
    ------
    KeyError : the file is not a pair-task output
    """
    if not os.path.isfile(filename):
        raise FileNotFoundError(f"Output file not found: {filename}")
    with h5py.File(filename, 'r') as f:
        missing = [key for key in ('metadata', 'correlations') if key not in f]
        if missing:
            raise KeyError(f"{filename}: missing {missing}; available groups: {list(f.keys())}")

        meta = {k: _attr(v) for k, v in f['metadata'].attrs.items()}
        meta['counters'] = {k: _attr(v) for k, v in f['metadata/counters'].attrs.items()}

        containers = {name: read_container(f[f'correlations/{name}'], name)
                      for name in f['correlations']}

        qa = {group: {} for group in QA_GROUPS}
        if 'qa' in f:
            for group in QA_GROUPS:
                if group in f['qa']:
                    qa[group] = {key: f[f'qa/{group}/{key}'][:] for key in f[f'qa/{group}']}

    return containers, meta, qa


def _attr(value):
    # h5py returns string lists as object arrays
    if isinstance(value, np.ndarray) and value.dtype.kind in 'OSU':
        return [v.decode() if isinstance(v, bytes) else str(v) for v in value]
    if isinstance(value, bytes):
        return value.decode()
    return value


# ══════════════════════════════════════════════════════════════════════════════
# Section 3: Sanity checks
# ══════════════════════════════════════════════════════════════════════════════

def sanity_check(events):
    """
    Print basic diagnostics on the first event to verify the input file was
    read correctly before committing to the full pass.

    Checks performed:
    - Total particle count and charge balance of the first event
    - Vertex z and field (should be within +-10 cm and +-5 kG)
    - Mean pT (should be ~0.3-0.6 GeV at LHC energies)
    - Fraction of particles with a TOF measurement
    """
    events = list(events)
    if len(events) == 0:
        print("WARNING: no events found — check input file path.")
        return

    ev = events[0]
    print("=" * 55)
    print("Sanity check — first event")
    print(f"  N particles        : {len(ev)}")
    print(f"  vertex z (cm)      : {ev.vertex_z:.2f}")
    print(f"  field (kG)         : {ev.mag_field:.2f}")
    print(f"  multiplicity       : {ev.multiplicity:.1f}")

    if len(ev) > 0:
        pt, _, _ = kn.get_kinematics(ev.particles)
        n_pos = int(np.count_nonzero(ev.particles['sign'] > 0))
        print(f"  +/- tracks         : {n_pos} / {len(ev) - n_pos}")
        print(f"  <pT> (GeV)         : {pt.mean():.4f}  (expect 0.3—0.6)")
        print(f"  with TOF (pi hyp.) : {np.isfinite(ev.particles['tof_pi']).mean():.2f}")

    print(f"  Total events       : {len(events)}")
    print("=" * 55)
