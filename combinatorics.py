import numpy as np
from enum import Enum


class CombinationPolicy(Enum):
    FULL_CROSS   = 'full'     # every (i in A, j in B)
    STRICT_UPPER = 'upper'    # every i < j of a single set


def _check(n_a, n_b, policy):
    if policy is CombinationPolicy.STRICT_UPPER and n_a != n_b:
        raise ValueError(
            f"STRICT_UPPER pairs a set with itself, got sizes {n_a} and {n_b}")


def combinations(n_a, n_b, policy):
    """
    Lazily yield index pairs (i, j).

    FULL_CROSS   : n_a * n_b pairs, row-major (i outer, j inner).
    STRICT_UPPER : n_a * (n_a - 1) / 2 pairs with i < j.

    Every call returns a fresh generator, so the sequence can be restarted.
    """
    _check(n_a, n_b, policy)
    if policy is CombinationPolicy.FULL_CROSS:
        for i in range(n_a):
            for j in range(n_b):
                yield i, j
    else:
        for i in range(n_a):
            for j in range(i + 1, n_a):
                yield i, j


def pair_indices(n_a, n_b, policy):
    """Same pairs and order as combinations(), as two index arrays."""
    _check(n_a, n_b, policy)
    if policy is CombinationPolicy.FULL_CROSS:
        ii, jj = np.meshgrid(np.arange(n_a), np.arange(n_b), indexing='ij')
        return ii.ravel(), jj.ravel()
    # upper-triangle indices (i < j)
    return np.triu_indices(n_a, k=1)


def assign_slots(i, j, rng):
    """
    Randomly decide, per pair, which particle goes into the first slot.

    For identical particles the labelling inside a pair is arbitrary; one
    uniform draw per pair from the pass-owned generator swaps the two
    indices with probability 1/2.

    Parameters
    ----------
    i, j : np.ndarray of int — index pairs from pair_indices()
    rng  : np.random.Generator

    Returns
    -------
    first, second : np.ndarray of int
    """
    swap   = rng.random(len(i)) <= 0.5
    first  = np.where(swap, j, i)
    second = np.where(swap, i, j)
    return first, second
