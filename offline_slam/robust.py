from typing import Optional
import math
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

ROBUST_DEFAULT_K = {"huber": 1.345, "cauchy": 1.0}


def make_spd(cov: np.ndarray, eps: float = 1e-12) -> np.ndarray:
    """Symmetrize a covariance and add diagonal jitter until Cholesky succeeds.

    Matrices that already factor are returned unchanged (apart from
    symmetrization), including the 1e-6 anchor covariance.
    """
    cov = np.array(cov, dtype=float)
    cov = 0.5 * (cov + cov.T)
    eye = np.eye(cov.shape[0])
    try:
        np.linalg.cholesky(cov)
        return cov
    except np.linalg.LinAlgError:
        pass
    jitter = eps
    for _ in range(12):
        try:
            np.linalg.cholesky(cov + eye * jitter)
            return cov + eye * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    # Last resort
    return cov + eye * jitter


def information_from_covariance(cov: np.ndarray) -> np.ndarray:
    """Inverse of an SPD covariance via its Cholesky factor."""
    cov = make_spd(cov)
    L = np.linalg.cholesky(cov)
    L_inv = np.linalg.inv(L)
    info = L_inv.T @ L_inv
    return 0.5 * (info + info.T)


def check_robust_kind(kind: Optional[str]) -> Optional[str]:
    if not kind or kind.lower() == "none":
        return None
    kind = kind.lower()
    if kind not in ROBUST_DEFAULT_K:
        raise ValueError(f"Unsupported robust kernel: {kind}")
    return kind


def robust_weight(chi2: float, kind: Optional[str] = None, k: Optional[float] = None) -> float:
    """IRLS weight for a squared Mahalanobis residual.

    kind: 'huber' | 'cauchy' | None
    k: tuning constant (default: Huber 1.345, Cauchy 1.0)
    """
    kind = check_robust_kind(kind)
    if kind is None:
        return 1.0
    k = ROBUST_DEFAULT_K[kind] if k is None else k
    r = math.sqrt(max(chi2, 0.0))
    if kind == "huber":
        return 1.0 if r <= k else k / r
    return 1.0 / (1.0 + (r / k) ** 2)


def robust_cost(chi2: float, kind: Optional[str] = None, k: Optional[float] = None) -> float:
    """Cost contribution matching ``robust_weight`` (0.5 * rho)."""
    kind = check_robust_kind(kind)
    if kind is None:
        return 0.5 * chi2
    k = ROBUST_DEFAULT_K[kind] if k is None else k
    r = math.sqrt(max(chi2, 0.0))
    if kind == "huber":
        return 0.5 * chi2 if r <= k else k * (r - 0.5 * k)
    return 0.5 * k * k * math.log1p((r / k) ** 2)


def gaussian_from_covariance(cov: np.ndarray):
    """Create a GTSAM Gaussian noise model from a covariance.

    Ensures:
      - symmetric positive-definite (via jitter)
      - float64 dtype
      - contiguous row-major memory
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    cov = make_spd(cov)
    cov = np.array(cov, dtype=np.float64, order="C")
    return gtsam.noiseModel.Gaussian.Covariance(cov)


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """Wrap a GTSAM noise model with a robust kernel."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build robust model")
    kind = check_robust_kind(kind)
    if kind is None:
        return base
    k = ROBUST_DEFAULT_K[kind] if k is None else k
    if kind == "huber":
        loss = gtsam.noiseModel.mEstimator.Huber(k)
    else:
        loss = gtsam.noiseModel.mEstimator.Cauchy(k)
    return gtsam.noiseModel.Robust.Create(loss, base)
