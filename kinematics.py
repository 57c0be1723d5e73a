
import numpy as np
# Single-particle and pair kinematics. Every function works on whole particle
# tables (PARTICLE_DTYPE rows); pair functions take two aligned tables, row k
# of p1 paired with row k of p2.

FRAMES = ('LCMS', 'PRF')


def get_kinematics(parts):
    px, py, pz = (parts[c].astype(np.float64) for c in ('px', 'py', 'pz'))

    pt  = np.sqrt(px**2 + py**2)
    p   = np.sqrt(px**2 + py**2 + pz**2)
    phi = np.arctan2(py, px)
    return pt, p, phi


def get_energy(parts, mass):
    """E = sqrt(p^2 + m^2) under a fixed mass hypothesis."""
    _, p, _ = get_kinematics(parts)
    return np.sqrt(p**2 + mass**2)


def get_kT(p1, p2):
    """Half the transverse momentum of the pair."""
    px = p1['px'].astype(np.float64) + p2['px']
    py = p1['py'].astype(np.float64) + p2['py']
    return 0.5 * np.sqrt(px**2 + py**2)


def get_mT(kT, mass1, mass2):
    return np.sqrt(kT**2 + (0.5 * (mass1 + mass2))**2)


def get_kstar(p1, mass1, p2, mass2):
    """
    Relative momentum in the pair rest frame,
        k* = sqrt( (s - (m1+m2)^2) (s - (m1-m2)^2) / 4s ),   s = (p1 + p2)^2.

    Symmetric under p1 <-> p2. Pairs with s <= 0 give NaN.
    """
    e1 = get_energy(p1, mass1)
    e2 = get_energy(p2, mass2)
    px = p1['px'].astype(np.float64) + p2['px']
    py = p1['py'].astype(np.float64) + p2['py']
    pz = p1['pz'].astype(np.float64) + p2['pz']
    s  = (e1 + e2)**2 - px**2 - py**2 - pz**2

    with np.errstate(divide='ignore', invalid='ignore'):
        k2 = (s - (mass1 + mass2)**2) * (s - (mass1 - mass2)**2) / (4.0 * s)
    # rounding can push k*^2 of collinear pairs slightly below zero
    k2 = np.where(s > 0, np.maximum(k2, 0.0), np.nan)
    return np.sqrt(k2)


def pair_frame_components(p1, mass1, p2, mass2, frame='LCMS'):
    """
    Out-side-long components of k = (p1 - p2)/2 in the LCMS or in the PRF.

    LCMS: boost along the beam until the pair has no longitudinal momentum,
    'out' along the pair pT, 'side' perpendicular to it in the transverse plane.
    PRF : additionally boost along 'out' to the pair rest frame, where |k| = k*.

    Returns
    -------
    k_out, k_side, k_long : np.ndarray
    valid                 : np.ndarray of bool — False for degenerate pairs
                            (zero pair pT, s <= 0), which have no frame
    """
    if frame not in FRAMES:
        raise ValueError(f"frame must be one of {FRAMES}, got {frame!r}")

    px1, py1, pz1 = (p1[c].astype(np.float64) for c in ('px', 'py', 'pz'))
    px2, py2, pz2 = (p2[c].astype(np.float64) for c in ('px', 'py', 'pz'))
    e1 = np.sqrt(px1**2 + py1**2 + pz1**2 + mass1**2)
    e2 = np.sqrt(px2**2 + py2**2 + pz2**2 + mass2**2)

    tPx, tPy, tPz, tE = px1 + px2, py1 + py2, pz1 + pz2, e1 + e2
    tPt  = np.sqrt(tPx**2 + tPy**2)
    tMt2 = tE**2 - tPz**2
    tM2  = tMt2 - tPt**2

    with np.errstate(divide='ignore', invalid='ignore'):
        tMt     = np.sqrt(tMt2)
        beta_z  = tPz / tE
        gamma_z = tE / tMt

        def to_lcms(px, py, pz, e):
            k_o = (px * tPx + py * tPy) / tPt
            k_s = (py * tPx - px * tPy) / tPt
            k_l = gamma_z * (pz - beta_z * e)
            e_l = gamma_z * (e - beta_z * pz)
            return k_o, k_s, k_l, e_l

        out1, side1, long1, el1 = to_lcms(px1, py1, pz1, e1)
        out2, side2, long2, el2 = to_lcms(px2, py2, pz2, e2)

        if frame == 'PRF':
            beta_t  = tPt / tMt
            gamma_t = tMt / np.sqrt(tM2)
            out1 = gamma_t * (out1 - beta_t * el1)
            out2 = gamma_t * (out2 - beta_t * el2)

        k_out  = 0.5 * (out1 - out2)
        k_side = 0.5 * (side1 - side2)
        k_long = 0.5 * (long1 - long2)

    valid = ((tPt > 0) & (tM2 > 0)
             & np.isfinite(k_out) & np.isfinite(k_side) & np.isfinite(k_long))
    return k_out, k_side, k_long, valid


def frame_observables(p1, mass1, p2, mass2, frame='LCMS'):
    """
    What the correlation containers are filled with, for a set of pairs.

    Returns a dict of arrays:
        'kv'        : |k| in the chosen frame (k* in the PRF) — histogram axis
        'cos_theta' : cosine of the polar angle of k w.r.t. the long axis
        'phi'       : azimuth of k in the out-side plane
        'kT'
        'valid'     : pairs with a well defined frame and |k| > 0
    """
    k_out, k_side, k_long, valid = pair_frame_components(p1, mass1, p2, mass2, frame)
    kv = np.sqrt(k_out**2 + k_side**2 + k_long**2)
    valid &= kv > 0

    with np.errstate(divide='ignore', invalid='ignore'):
        cos_theta = np.clip(k_long / kv, -1.0, 1.0)
    phi = np.arctan2(k_side, k_out)

    return {
        'kv':        kv,
        'cos_theta': cos_theta,
        'phi':       phi,
        'kT':        get_kT(p1, p2),
        'valid':     valid,
    }


def pair_observables(p1, mass1, p2, mass2, frame='LCMS'):
    """frame_observables plus the closed-form k* and mT of every pair."""
    obs = frame_observables(p1, mass1, p2, mass2, frame)
    obs['kstar'] = get_kstar(p1, mass1, p2, mass2)
    obs['mT']    = get_mT(obs['kT'], mass1, mass2)
    return obs
