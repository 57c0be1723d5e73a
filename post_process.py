"""
Merge per-node outputs and build correlation functions.

    python post_process.py merged.h5 node_0.h5 node_1.h5 ... [--plots DIR]

Sums are additive, so merging is a plain sum of every container array; the
covariances are then recomputed from the merged first and second moment sums.
"""
import argparse
import logging
import os

import numpy as np
import h5py

import analyser as an
from harmonics import EventType

logger = logging.getLogger(__name__)

# metadata that must agree for two outputs to be summed
MERGE_KEYS = ('frame', 'l_max', 'pdg', 'charge', 'channels', 'use_3d',
              'kstar_bins', 'kt_bins', 'mult_bins', 'vtx_bins', 'mix_mult_bins')

NORM_RANGE = (0.15, 0.25)   # [GeV] k* window used to normalise C(k*)


def _same(a, b):
    if isinstance(a, np.ndarray) or isinstance(b, np.ndarray):
        a, b = np.asarray(a), np.asarray(b)
        return a.shape == b.shape and np.array_equal(a, b)
    return a == b


def check_metadata(meta, other, filename=''):
    """Raise ValueError naming the first setting two outputs disagree on."""
    for key in MERGE_KEYS:
        if not _same(meta.get(key), other.get(key)):
            raise ValueError(f"Cannot merge {filename}: '{key}' differs "
                             f"({meta.get(key)} vs {other.get(key)})")


def merge_outputs(files):
    """
    Sum the outputs of several nodes.

    Parameters
    ----------
    files : list of str — outputs of analyser.save_hdf5

    Returns
    -------
    containers, meta, qa — as analyser.load_hdf5, summed over all files
    """
    files = list(files)
    if not files:
        raise ValueError("No files to merge")

    containers, meta, qa = an.load_hdf5(files[0])
    # an input may itself be a merged output carrying a list of node ids
    meta['node_id'] = np.atleast_1d(meta['node_id']).tolist()

    for filename in files[1:]:
        conts, m, q = an.load_hdf5(filename)
        check_metadata(meta, m, filename)

        for name, cont in conts.items():
            containers[name].merge(cont)

        meta['n_events']      += m['n_events']
        meta['n_events_seen'] += m['n_events_seen']
        meta['node_id'].extend(np.atleast_1d(m['node_id']).tolist())
        for key, value in m['counters'].items():
            meta['counters'][key] = meta['counters'].get(key, 0) + value

        for group in an.QA_GROUPS:
            for key, hist in q[group].items():
                if key in qa[group]:
                    qa[group][key] = qa[group][key] + hist
                else:
                    qa[group][key] = hist.copy()

    n_moments = (int(meta['l_max']) + 1) ** 2
    for cont in containers.values():
        for event_type in EventType:
            cont.compute_covariance(event_type, n_moments)

    logger.info("Merged %d files: %d events", len(files), meta['n_events'])
    return containers, meta, qa


def save_merged(filename, containers, meta, qa):
    """Write merged containers in the same layout as analyser.save_hdf5."""
    with h5py.File(filename, 'w') as f:
        grp = f.create_group('metadata')
        for key, value in meta.items():
            if key == 'counters':
                continue
            grp.attrs[key] = value
        cnt = grp.create_group('counters')
        for key, value in meta['counters'].items():
            cnt.attrs[key] = value

        for name, cont in containers.items():
            an.write_container(f.create_group(f'correlations/{name}'), cont)

        for group in an.QA_GROUPS:
            sub = f.create_group(f'qa/{group}')
            for key, hist in qa.get(group, {}).items():
                sub.create_dataset(key, data=hist, compression='gzip', compression_opts=4)


def correlation_function(container, norm_range=NORM_RANGE):
    """
    C(k*) = N * same / mixed in every (multiplicity, kT) cell, from the l=0
    moment (the pair counts). N makes the ratio 1 on average in norm_range.

    Returns
    -------
    dict with
        kstar_cents : (n_kstar,)
        C, C_err    : (n_mult, n_kt, n_kstar) — NaN where the mixed count is 0
        norm        : (n_mult, n_kt)          — NaN if norm_range is empty
    """
    edges = container.kstar_axis.edges
    cents = 0.5 * (edges[1:] + edges[:-1])

    num   = container.numerator.counts
    den   = container.denominator.counts
    n_num = container.numerator.entries
    n_den = container.denominator.entries

    in_norm = (cents >= norm_range[0]) & (cents <= norm_range[1])
    with np.errstate(divide='ignore', invalid='ignore'):
        norm  = den[..., in_norm].sum(axis=-1) / num[..., in_norm].sum(axis=-1)
        norm  = np.where(np.isfinite(norm) & (norm > 0), norm, np.nan)
        ratio = np.where(den > 0, num / den, np.nan)
        C     = norm[..., None] * ratio
        rel   = np.sqrt(np.where(n_num > 0, 1.0 / n_num, 0.0)
                        + np.where(n_den > 0, 1.0 / n_den, 0.0))

    return {
        'kstar_cents': cents,
        'C':           C,
        'C_err':       np.abs(C) * rel,
        'norm':        norm,
    }


def main():
    argp = argparse.ArgumentParser(description="Merge per-node femtoscopy outputs.")
    argp.add_argument('outfile', help="merged HDF5 output")
    argp.add_argument('infiles', nargs='+', help="per-node outputs")
    argp.add_argument('--plots', metavar='DIR', default=None,
                      help="write sanity plots of the merged output to DIR")
    argp.add_argument('-v', '--verbose', action='store_true')
    args = argp.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    containers, meta, qa = merge_outputs(args.infiles)
    save_merged(args.outfile, containers, meta, qa)
    print(f"Saved {args.outfile}  ({meta['n_events']} events from {len(args.infiles)} files)")

    if args.plots:
        import sanityplots as sanity
        os.makedirs(args.plots, exist_ok=True)
        sanity.plot_all(containers, meta, qa, args.plots)


if __name__ == "__main__":
    main()
