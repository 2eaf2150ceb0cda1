"""Running-average helpers for surfel updates."""
import numpy as np


def weighted_fusion(old_value, new_value, old_weight, new_weight=1.0):
    """
    Confidence-weighted running mean.

    The stored value carries the weight of all observations fused so far
    (its confidence); the new observation carries new_weight.

    Args:
        old_value: current value (scalar or array)
        new_value: new observation (same shape as old_value)
        old_weight: weight of the stored value, usually the surfel confidence
        new_weight: weight of the new observation

    Returns:
        Fused value

    Examples:
        >>> weighted_fusion(np.array([0.0, 0.0, 1.0]), np.array([0.0, 0.0, 2.0]), 3)
        array([0.  , 0.  , 1.25])
    """
    old_value = np.asarray(old_value, dtype=np.float64)
    new_value = np.asarray(new_value, dtype=np.float64)
    total = float(old_weight) + float(new_weight)
    return (float(old_weight) * old_value + float(new_weight) * new_value) / total


def fuse_normals(old_normal, new_normal, old_weight, new_weight=1.0):
    """
    Weighted mean of unit normals, renormalised.

    The new normal is flipped into the hemisphere of the old one first, so
    opposite-facing estimates of the same plane do not cancel out. Falls back
    to the old normal if the mean degenerates.
    """
    old_normal = np.asarray(old_normal, dtype=np.float64)
    new_normal = np.asarray(new_normal, dtype=np.float64)
    if np.dot(old_normal, new_normal) < 0.0:
        new_normal = -new_normal
    fused = weighted_fusion(old_normal, new_normal, old_weight, new_weight)
    norm = np.linalg.norm(fused)
    if norm < 1e-12:
        return old_normal
    return fused / norm
