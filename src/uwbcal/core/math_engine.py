import numpy as np
from typing import Optional, Tuple

from uwbcal.core.errors import DegenerateConfiguration, SingularMatrix


def weighted_centroid(coords: np.ndarray, w_sq: np.ndarray) -> np.ndarray:
    """Weighted mean of an (n, 2) coordinate array."""
    return (w_sq[:, np.newaxis] * coords).sum(axis=0) / np.sum(w_sq)


def calculate_wls_scaled_rotation(
    measured_dev: np.ndarray, reference_dev: np.ndarray, w_sq: np.ndarray
) -> Tuple[float, float, float]:
    """
    Weighted least-squares fit of reference_dev ≈ R(theta) · diag(sx, sy) · measured_dev.

    Inputs are centred (n, 2) arrays. Since R is orthonormal the cost equals
    sum w * |R^T r - S m|^2, so for a fixed theta the scales are
        sx = sum(w * m_x * u_x) / sum(w * m_x^2)
        sy = sum(w * m_y * u_y) / sum(w * m_y^2),   u = R^T r.
    Substituting back leaves v^T M v with v = (cos theta, sin theta) to be
    maximised over the unit circle: the principal eigenvector of M.
    """
    mx, my = measured_dev[:, 0], measured_dev[:, 1]
    rx, ry = reference_dev[:, 0], reference_dev[:, 1]

    s_xx = float(np.sum(w_sq * mx * mx))
    s_yy = float(np.sum(w_sq * my * my))
    if s_xx <= 0.0 or s_yy <= 0.0:
        raise DegenerateConfiguration("Measured points have no spread along one axis.")

    a = float(np.sum(w_sq * mx * rx))
    b = float(np.sum(w_sq * mx * ry))
    c = float(np.sum(w_sq * my * rx))
    d = float(np.sum(w_sq * my * ry))

    M = np.array([
        [a * a / s_xx + d * d / s_yy, a * b / s_xx - c * d / s_yy],
        [a * b / s_xx - c * d / s_yy, b * b / s_xx + c * c / s_yy],
    ])
    eigvals, eigvecs = np.linalg.eigh(M)
    if eigvals[-1] <= 0.0:
        raise DegenerateConfiguration("Reference points carry no usable spread.")

    cos_t, sin_t = eigvecs[:, -1]
    sx = (a * cos_t + b * sin_t) / s_xx
    sy = (d * cos_t - c * sin_t) / s_yy

    # v and -v are both maximisers; -v is theta + pi with both scales negated.
    if sx + sy < 0.0:
        cos_t, sin_t, sx, sy = -cos_t, -sin_t, -sx, -sy

    theta = float(np.arctan2(sin_t, cos_t))
    return theta, float(sx), float(sy)


def solve_affine_normal_equations(
    source: np.ndarray, target: np.ndarray, max_condition_number: float
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Least-squares fit of target ≈ A · source + t from (n, 2) arrays.

    Both point sets are reduced to their centroids and the source deviations
    divided by their RMS spread, so the 2x2 normal matrix reflects the shape
    of the source points rather than their distance from the origin. Both
    target columns share it and are solved together; t follows from the
    centroids.
    """
    source_c = source.mean(axis=0)
    target_c = target.mean(axis=0)
    d_src = source - source_c
    d_tgt = target - target_c

    spread = float(np.sqrt(np.mean(np.sum(d_src ** 2, axis=1))))
    if not np.isfinite(spread) or spread == 0.0:
        raise SingularMatrix("Source points are coincident.")

    X = d_src / spread
    N_mat = X.T @ X
    rhs = X.T @ d_tgt

    if not np.all(np.isfinite(N_mat)) or not np.all(np.isfinite(rhs)):
        raise SingularMatrix("Normal equations contain non-finite values.")
    cond = np.linalg.cond(N_mat)
    if not np.isfinite(cond) or cond > max_condition_number:
        raise SingularMatrix(
            f"Normal equations are singular (condition number {cond:.3g}); "
            "source points are collinear or coincident."
        )

    try:
        beta = np.linalg.solve(N_mat, rhs)
    except np.linalg.LinAlgError as e:
        raise SingularMatrix(f"Normal equations could not be solved: {e}")

    # d_tgt ≈ X · beta  with  X = d_src / spread,  hence  A^T = beta / spread.
    A = (beta / spread).T
    t = target_c - A @ source_c
    return A, t


def decompose_linear_part(A: np.ndarray) -> Tuple[float, float, float, np.ndarray]:
    """
    Polar decomposition A = R · P through the SVD A = U Σ V^T.

    R = U V^T is the closest rotation; P = R^T A is the symmetric stretch in
    source axes whose diagonal gives (sx, sy). For A = R0 · diag(sx, sy) with
    positive scales this recovers R0 and the scales exactly. Callers must
    reject det(A) <= 0 beforehand.
    """
    U, _, Vt = np.linalg.svd(A)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        raise DegenerateConfiguration("Linear part contains a reflection.")
    P = R.T @ A
    angle = float(np.arctan2(R[1, 0], R[0, 0]))
    return angle, float(P[0, 0]), float(P[1, 1]), R


def rmse(predicted: np.ndarray, target: np.ndarray) -> float:
    """Root-mean-square Euclidean distance between paired (n, 2) arrays."""
    if len(predicted) == 0:
        return 0.0
    sq = np.sum((predicted - target) ** 2, axis=1)
    return float(np.sqrt(np.mean(sq)))


def check_extrapolation(
    points: np.ndarray, control_pts: Optional[np.ndarray]
) -> Tuple[Optional[float], int]:
    """Distance beyond the control polygon. Returns (max distance, count) if any point is outside."""
    if control_pts is not None and len(control_pts) >= 3:
        from scipy.spatial import ConvexHull, QhullError

        try:
            hull = ConvexHull(control_pts)
        except QhullError:
            return None, 0
        equations = hull.equations
        dists = np.dot(points, equations[:, :2].T) + equations[:, 2]
        max_dists = np.max(dists, axis=1)
        epsilon = 1e-5
        outside_mask = max_dists > epsilon

        if np.any(outside_mask):
            return float(np.max(max_dists[outside_mask])), int(np.sum(outside_mask))
    return None, 0
