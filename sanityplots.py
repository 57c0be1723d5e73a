import os

import numpy as np
import matplotlib.pyplot as plt
import matplotlib.cm as cm

from harmonics import CorrelationContainer
from pair_filter import QA_DETA_BINS, QA_DPHI_BINS
from processer import EVENT_QA_BINS, TRACK_QA_BINS
import post_process as pp


###################################################### C(k*) ###########################################################

def plot_correlation(containers, sanity_dir, channel, norm_range=pp.NORM_RANGE):
    """C(k*) of one channel, one curve per kT bin, summed over multiplicity."""
    cont = containers[channel]

    # sum the multiplicity classes before taking the ratio
    merged = CorrelationContainer(cont.kstar_axis.edges, cont.kt_axis.edges, None,
                                  l_max=0, name=cont.name)
    for src, dst in ((cont.numerator, merged.numerator), (cont.denominator, merged.denominator)):
        dst.counts[0]  = src.counts.sum(axis=0)
        dst.entries[0] = src.entries.sum(axis=0)
    cf = pp.correlation_function(merged, norm_range)

    fig, ax = plt.subplots(figsize=(8, 5))
    kt_edges = cont.kt_axis.edges
    colors   = cm.plasma(np.linspace(0.1, 0.9, cont.kt_axis.n_bins))

    for ikt, color in enumerate(colors):
        C, err = cf['C'][0, ikt], cf['C_err'][0, ikt]
        ok = np.isfinite(C)
        if not np.any(ok):
            continue
        label = (f'{kt_edges[ikt]:.2f} < $k_T$ < {kt_edges[ikt + 1]:.2f} GeV'
                 if np.isfinite(kt_edges[ikt + 1]) else 'all $k_T$')
        ax.errorbar(cf['kstar_cents'][ok], C[ok], yerr=err[ok],
                    fmt='o-', ms=3, color=color, label=label)

    ax.axhline(1.0, color='gray', lw=0.8, ls='--')
    ax.axvspan(*norm_range, color='gray', alpha=0.15)
    ax.set_xlabel(r'$k^*$ (GeV)')
    ax.set_ylabel(r'$C(k^*)$')
    ax.set_title(f'Correlation function {channel}')
    ax.legend(fontsize=7)
    plt.tight_layout()
    path = os.path.join(sanity_dir, f'correlation_{channel}.pdf')
    plt.savefig(path)
    plt.close(fig)
    print(f"Saved {path}")
    return path


###################################################### MIXING ###########################################################

def plot_mixing_occupancy(qa, meta, sanity_dir):
    """Events and mixed pairings per (z-vertex, multiplicity) class."""
    vtx  = np.asarray(meta['vtx_bins'])
    mult = np.asarray(meta['mix_mult_bins'])
    shape = (len(vtx) - 1, len(mult) - 1)

    fig, axes = plt.subplots(1, 2, figsize=(12, 5))
    for ax, key, title in zip(axes, ('events_per_bin', 'pairings_per_bin'),
                              ('Events per class', 'Mixed pairings per class')):
        counts = np.asarray(qa['mixing'].get(key, np.zeros(shape[0] * shape[1])))
        im = ax.imshow(counts.reshape(shape).T, origin='lower', aspect='auto',
                       cmap='viridis', interpolation='nearest')
        fig.colorbar(im, ax=ax)
        ax.set_xlabel('z-vertex bin')
        ax.set_ylabel('multiplicity bin')
        ax.set_title(title)

    plt.tight_layout()
    path = os.path.join(sanity_dir, 'mixing_occupancy.pdf')
    plt.savefig(path)
    plt.close(fig)
    print(f"Saved {path}")
    return path


###################################################### CPR ###########################################################

def plot_cpr_maps(qa, sanity_dir):
    """delta-eta vs delta-phi* before and after the close pair rejection."""
    cpr = qa['cpr']
    keys = [f'{evt}_{stage}' for evt in ('same', 'mixed') for stage in ('before', 'after')]
    if not any(k in cpr for k in keys):
        print("No close pair QA stored, skipping CPR maps")
        return None

    fig, axes = plt.subplots(2, 2, figsize=(10, 9))
    for ax, key in zip(axes.ravel(), keys):
        if key not in cpr:
            ax.set_visible(False)
            continue
        im = ax.pcolormesh(QA_DPHI_BINS, QA_DETA_BINS, cpr[key], cmap='viridis')
        fig.colorbar(im, ax=ax)
        ax.set_xlabel(r'$\Delta\varphi^*$')
        ax.set_ylabel(r'$\Delta\eta$')
        ax.set_title(key.replace('_', ' '))

    plt.tight_layout()
    path = os.path.join(sanity_dir, 'cpr_maps.pdf')
    plt.savefig(path)
    plt.close(fig)
    print(f"Saved {path}")
    return path


###################################################### TRACKS / EVENTS ###########################################################

def plot_selection_qa(qa, sanity_dir):
    """Admitted particles of both roles and the accepted events."""
    tracks, events = qa.get('tracks', {}), qa.get('events', {})
    if not tracks and not events:
        print("No selection QA stored, skipping track/event QA")
        return None

    panels = list(TRACK_QA_BINS.items()) + list(EVENT_QA_BINS.items())
    fig, axes = plt.subplots(2, 4, figsize=(16, 7))
    for ax, (var, edges) in zip(axes.ravel(), panels):
        cents = 0.5 * (edges[1:] + edges[:-1])
        if var in EVENT_QA_BINS:
            if var in events:
                ax.step(cents, events[var], where='mid', color='k')
        else:
            for role, color in ((1, 'tab:red'), (2, 'tab:blue')):
                key = f'role{role}_{var}'
                if key in tracks:
                    ax.step(cents, tracks[key], where='mid', color=color,
                            label=f'role {role}')
            ax.legend(fontsize=7)
        ax.set_xlabel(var)
    for ax in axes.ravel()[len(panels):]:
        ax.set_visible(False)

    plt.tight_layout()
    path = os.path.join(sanity_dir, 'selection_qa.pdf')
    plt.savefig(path)
    plt.close(fig)
    print(f"Saved {path}")
    return path


def plot_all(containers, meta, qa, sanity_dir):
    paths = [plot_correlation(containers, sanity_dir, name) for name in containers]
    paths.append(plot_mixing_occupancy(qa, meta, sanity_dir))
    paths.append(plot_cpr_maps(qa, sanity_dir))
    paths.append(plot_selection_qa(qa, sanity_dir))
    return [p for p in paths if p is not None]
