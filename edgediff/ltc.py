"""Linearly transformed cosines (Heitz et al. 2016, 2017).

Holds the two lookup tables used by the secondary edge sampler: the GGX fit
matrix table indexed by roughness and view angle, and the horizon-clipped
sphere form factor table. Both are built once per process, either from a
fitted .npz file or by a deterministic moment-matching fit.
"""

from functools import lru_cache
import logging
import math

import numpy as np
from scipy.optimize import minimize
import warp as wp

from .rendering_math import coordinate_system, solve_cubic

logger = logging.getLogger(__name__)

LTC_SIZE = 64
LTC_SPHERE_SIZE = 64
LTC_TABLE_VERSION = 1
MIN_ALPHA = 1e-3

# Largest view angle used during the fit, grazing views have no lobe
MAX_FIT_THETA = 0.5 * math.pi - 1e-3


@wp.struct
class LTCTables:
    tab_m: wp.array(dtype=wp.mat33f)
    tab_sphere: wp.array(dtype=wp.float32)
    size: int
    sphere_size: int


def _ggx_d(cos_h, alpha):
    a2 = alpha * alpha
    d = cos_h * cos_h * (a2 - 1.0) + 1.0
    return a2 / (np.pi * d * d)


def _smith_g1(cos_v, alpha):
    a2 = alpha * alpha
    cos_v = np.maximum(cos_v, 0.0)
    return 2.0 * cos_v / np.maximum(cos_v + np.sqrt(a2 + (1.0 - a2) * cos_v * cos_v), 1e-12)


def _view_direction(theta):
    return np.stack([np.sin(theta), np.zeros_like(theta), np.cos(theta)], axis=-1)


def _stratified_grid(n):
    u = (np.arange(n) + 0.5) / n
    u1, u2 = np.meshgrid(u, u, indexing="ij")
    return u1.reshape(-1), u2.reshape(-1)


def ggx_lobe(alpha, wi, wo):
    """GGX reflectance times the cosine of wo, without Fresnel, in the
    local frame where z is the normal."""
    cos_i = wi[..., 2]
    cos_o = wo[..., 2]
    h = wi + wo
    h = h / np.maximum(np.linalg.norm(h, axis=-1, keepdims=True), 1e-12)
    value = (
        _ggx_d(h[..., 2], alpha)
        * _smith_g1(cos_i, alpha)
        * _smith_g1(cos_o, alpha)
        / (4.0 * np.maximum(cos_i, 1e-6))
    )
    return np.where((cos_o > 0.0) & (cos_i > 0.0), value, 0.0)


def _lobe_moments(alpha, thetas, num_samples):
    """Albedo and average direction of the GGX lobe for each view angle.

    Uses importance sampling of visible microfacet normals on a fixed
    stratified grid, so the result is deterministic.
    """
    u1, u2 = _stratified_grid(num_samples)
    wi = _view_direction(thetas)[:, None, :]

    tan2 = alpha * alpha * u1 / (1.0 - u1)
    cos_h = 1.0 / np.sqrt(1.0 + tan2)
    sin_h = np.sqrt(np.maximum(1.0 - cos_h * cos_h, 0.0))
    phi = 2.0 * np.pi * u2
    h = np.stack([sin_h * np.cos(phi), sin_h * np.sin(phi), cos_h], axis=-1)[None]

    wi_dot_h = np.sum(wi * h, axis=-1, keepdims=True)
    wo = 2.0 * wi_dot_h * h - wi

    cos_i = wi[..., 2]
    cos_o = wo[..., 2]
    weight = (
        _smith_g1(cos_i, alpha)
        * _smith_g1(cos_o, alpha)
        * wi_dot_h[..., 0]
        / (np.maximum(cos_i, 1e-6) * cos_h[None])
    )
    weight = np.where((cos_o > 0.0) & (wi_dot_h[..., 0] > 0.0), weight, 0.0)

    albedo = weight.mean(axis=1)
    avg_dir = (weight[..., None] * wo).sum(axis=1)
    return albedo, avg_dir


def _ltc_matrix(avg_dir, scale_x, scale_y):
    z = np.array([avg_dir[0], 0.0, avg_dir[2]])
    z_len = np.linalg.norm(z)
    z = z / z_len if z_len > 0.0 else np.array([0.0, 0.0, 1.0])
    y = np.array([0.0, 1.0, 0.0])
    x = np.cross(y, z)
    return np.stack([x * scale_x, y * scale_y, z], axis=1)


def _hemisphere_grid(n_theta=32, n_phi=64):
    theta = (np.arange(n_theta) + 0.5) / n_theta * (0.5 * np.pi)
    phi = (np.arange(n_phi) + 0.5) / n_phi * (2.0 * np.pi)
    theta, phi = np.meshgrid(theta, phi, indexing="ij")
    dirs = np.stack(
        [np.sin(theta) * np.cos(phi), np.sin(theta) * np.sin(phi), np.cos(theta)],
        axis=-1,
    ).reshape(-1, 3)
    d_omega = (np.sin(theta) * (0.5 * np.pi / n_theta) * (2.0 * np.pi / n_phi)).reshape(-1)
    return dirs, d_omega


def ltc_distribution(m, dirs):
    """Density of the cosine lobe transformed by m, evaluated at dirs."""
    m_inv = np.linalg.inv(m)
    local = dirs @ m_inv.T
    length = np.linalg.norm(local, axis=-1)
    cos_term = np.maximum(local[:, 2] / length, 0.0) / np.pi
    jacobian = abs(np.linalg.det(m_inv)) / length**3
    return cos_term * jacobian


def _refine_matrix(m0, alpha, theta, dirs, d_omega):
    wi = _view_direction(np.array(theta))
    lobe = ggx_lobe(alpha, wi[None, :], dirs)
    albedo = np.sum(lobe * d_omega)
    if albedo <= 0.0:
        return m0
    target = lobe / albedo

    z = m0[:, 2]
    x = m0[:, 0] / np.linalg.norm(m0[:, 0])
    y = np.array([0.0, 1.0, 0.0])

    def error(params):
        sx, sy = np.abs(params) + MIN_ALPHA
        m = np.stack([x * sx, y * sy, z], axis=1)
        diff = ltc_distribution(m, dirs) - target
        return np.sum(np.abs(diff) ** 3 * d_omega)

    x0 = np.array([np.linalg.norm(m0[:, 0]), np.linalg.norm(m0[:, 1])])
    result = minimize(error, x0, method="Nelder-Mead", options={"xatol": 1e-5, "maxiter": 200})
    sx, sy = np.abs(result.x) + MIN_ALPHA
    return np.stack([x * sx, y * sy, z], axis=1)


def fit_matrix_table(size=LTC_SIZE, num_samples=64, refine=False, progress=None):
    """Fit the LTC matrix table for the GGX lobe.

    Entry rid + tid * size holds M for roughness rid / (size - 1) and view
    angle tid / (size - 1) * pi / 2. The view direction lies in the xz plane.
    """
    tab = np.zeros((size * size, 3, 3), dtype=np.float64)
    thetas = np.minimum(np.arange(size) / (size - 1) * (0.5 * np.pi), MAX_FIT_THETA)
    if refine:
        dirs, d_omega = _hemisphere_grid()

    rids = range(size)
    if progress is not None:
        rids = progress(rids)
    for rid in rids:
        alpha = max(rid / (size - 1), MIN_ALPHA)
        _, avg_dirs = _lobe_moments(alpha, thetas, num_samples)
        for tid in range(size):
            m = _ltc_matrix(avg_dirs[tid], alpha, alpha)
            if refine:
                m = _refine_matrix(m, alpha, thetas[tid], dirs, d_omega)
            tab[rid + tid * size] = m
    return tab.astype(np.float32)


def fit_sphere_table(size=LTC_SPHERE_SIZE, n_theta=48, n_phi=96):
    """Horizon-clipped sphere integral divided by its unclipped form factor.

    Entry uid + vid * size holds the value for the cosine (uid / (size - 1))
    * 2 - 1 between the sphere direction and the normal, and the form factor
    vid / (size - 1).
    """
    tab = np.zeros((size, size), dtype=np.float64)
    cos_dir = np.arange(size) / (size - 1) * 2.0 - 1.0
    sin_dir = np.sqrt(np.maximum(1.0 - cos_dir * cos_dir, 0.0))
    tab[0] = np.maximum(cos_dir, 0.0)

    phi = (np.arange(n_phi) + 0.5) / n_phi * (2.0 * np.pi)
    for vid in range(1, size):
        form_factor = vid / (size - 1)
        sigma = math.asin(math.sqrt(form_factor))
        theta = (np.arange(n_theta) + 0.5) / n_theta * sigma
        t, p = np.meshgrid(theta, phi, indexing="ij")
        # Cosine to the normal of a direction in the cap around the sphere direction
        cos_n = (
            cos_dir[:, None, None] * np.cos(t)[None]
            + sin_dir[:, None, None] * np.sin(t)[None] * np.cos(p)[None]
        )
        d_omega = np.sin(t) * (sigma / n_theta) * (2.0 * np.pi / n_phi)
        clipped = np.sum(np.maximum(cos_n, 0.0) * d_omega[None], axis=(1, 2)) / np.pi
        tab[vid] = clipped / form_factor
    return np.clip(tab, 0.0, 1.0).reshape(-1).astype(np.float32)


def fit_ltc_tables(size=LTC_SIZE, sphere_size=LTC_SPHERE_SIZE, refine=False, progress=None):
    return (
        fit_matrix_table(size, refine=refine, progress=progress),
        fit_sphere_table(sphere_size),
    )


def save_ltc_tables(path, tab_m, tab_sphere):
    np.savez(
        path,
        version=np.int32(LTC_TABLE_VERSION),
        tab_m=tab_m,
        tab_sphere=tab_sphere,
    )


@lru_cache(maxsize=None)
def _load_host_tables(path):
    if path is None:
        logger.info("Fitting LTC tables (%dx%d)", LTC_SIZE, LTC_SIZE)
        return fit_ltc_tables()

    with np.load(path) as data:
        for key in ("version", "tab_m", "tab_sphere"):
            if key not in data:
                raise ValueError(f"LTC table {path} is missing '{key}'")
        version = int(data["version"])
        tab_m = data["tab_m"].astype(np.float32)
        tab_sphere = data["tab_sphere"].astype(np.float32)

    if version != LTC_TABLE_VERSION:
        raise ValueError(
            f"LTC table {path} has version {version}, expected {LTC_TABLE_VERSION}"
        )
    if tab_m.shape != (LTC_SIZE * LTC_SIZE, 3, 3):
        raise ValueError(f"LTC matrix table has shape {tab_m.shape}")
    if tab_sphere.shape != (LTC_SPHERE_SIZE * LTC_SPHERE_SIZE,):
        raise ValueError(f"LTC sphere table has shape {tab_sphere.shape}")
    logger.info("Loaded LTC tables from %s", path)
    return tab_m, tab_sphere


@lru_cache(maxsize=None)
def load_ltc_tables(path=None, device="cpu") -> LTCTables:
    tab_m, tab_sphere = _load_host_tables(path)
    tables = LTCTables()
    tables.tab_m = wp.array(tab_m, dtype=wp.mat33f, device=device)
    tables.tab_sphere = wp.array(tab_sphere, dtype=wp.float32, device=device)
    tables.size = LTC_SIZE
    tables.sphere_size = LTC_SPHERE_SIZE
    return tables


@wp.func
def get_ltc_matrix(ltc: LTCTables, roughness: float, cos_theta: float) -> wp.mat33f:
    theta = wp.acos(wp.clamp(cos_theta, -1.0, 1.0))
    rid = wp.clamp(int(roughness * float(ltc.size - 1)), 0, ltc.size - 1)
    tid = wp.clamp(int(theta / (0.5 * wp.pi) * float(ltc.size - 1)), 0, ltc.size - 1)
    return ltc.tab_m[rid + tid * ltc.size]


@wp.func
def get_sphere_tab(ltc: LTCTables, cos_theta: float, form_factor: float) -> float:
    n = ltc.sphere_size
    uid = wp.clamp(int((cos_theta * 0.5 + 0.5) * float(n - 1)), 0, n - 1)
    vid = wp.clamp(int(form_factor * float(n - 1)), 0, n - 1)
    return ltc.tab_sphere[uid + vid * n]


@wp.func
def ltc_sphere_integral(
    ltc: LTCTables, center: wp.vec3f, radius: float, m_inv: wp.mat33f
) -> float:
    """Integral of the transformed cosine over a sphere, clipped to the
    horizon.

    center is relative to the shading point. The sphere is replaced by the
    disk facing the shading point, transformed into an ellipse whose
    average direction and form factor index the sphere table.
    """
    dist = wp.length(center)
    if dist <= radius:
        # The shading point is inside the sphere
        return wp.pi

    e1, e2 = coordinate_system(center / dist)
    c = m_inv * center
    v1 = m_inv * (e1 * radius)
    v2 = m_inv * (e2 * radius)
    if wp.dot(wp.cross(v1, v2), c) <= 0.0:
        return 0.0

    d11 = wp.dot(v1, v1)
    d22 = wp.dot(v2, v2)
    d12 = wp.dot(v1, v2)
    a = float(0.0)
    b = float(0.0)
    if wp.abs(d12) / wp.sqrt(d11 * d22) > 1e-4:
        tr = d11 + d22
        det = wp.sqrt(wp.max(d11 * d22 - d12 * d12, 0.0))
        u = 0.5 * wp.sqrt(wp.max(tr - 2.0 * det, 0.0))
        v = 0.5 * wp.sqrt(tr + 2.0 * det)
        e_max = (u + v) * (u + v)
        e_min = (u - v) * (u - v)
        w1 = wp.vec3f(0.0, 0.0, 0.0)
        w2 = wp.vec3f(0.0, 0.0, 0.0)
        if d11 > d22:
            w1 = d12 * v1 + (e_max - d11) * v2
            w2 = d12 * v1 + (e_min - d11) * v2
        else:
            w1 = d12 * v2 + (e_max - d22) * v1
            w2 = d12 * v2 + (e_min - d22) * v1
        a = 1.0 / e_max
        b = 1.0 / e_min
        v1 = wp.normalize(w1)
        v2 = wp.normalize(w2)
    else:
        a = 1.0 / d11
        b = 1.0 / d22
        v1 = v1 * wp.sqrt(a)
        v2 = v2 * wp.sqrt(b)

    v3 = wp.cross(v1, v2)
    if wp.dot(c, v3) < 0.0:
        v3 = -v3

    L = wp.dot(v3, c)
    x0 = wp.dot(v1, c) / L
    y0 = wp.dot(v2, c) / L
    a = a * L * L
    b = b * L * L

    c0 = a * b
    c1 = a * b * (1.0 + x0 * x0 + y0 * y0) - a - b
    c2 = 1.0 - a * (1.0 + x0 * x0) - b * (1.0 + y0 * y0)
    roots = solve_cubic(c0, c1, c2, 1.0)

    avg_local = wp.vec3f(a * x0 / (a - roots[1]), b * y0 / (b - roots[1]), 1.0)
    rotate = wp.mat33f(
        v1[0], v2[0], v3[0],
        v1[1], v2[1], v3[1],
        v1[2], v2[2], v3[2],
    )
    avg_dir = wp.normalize(rotate * avg_local)

    L1 = wp.sqrt(wp.max(-roots[1] / roots[2], 0.0))
    L2 = wp.sqrt(wp.max(-roots[1] / roots[0], 0.0))
    form_factor = L1 * L2 / wp.sqrt((1.0 + L1 * L1) * (1.0 + L2 * L2))
    assert wp.isfinite(form_factor)
    if not wp.isfinite(form_factor):
        return 0.0
    return get_sphere_tab(ltc, avg_dir[2], form_factor) * form_factor


@wp.func
def clip_to_horizon(v0: wp.vec3f, v1: wp.vec3f):
    # Clip a local space segment to z >= 0
    if v0[2] <= 0.0 and v1[2] <= 0.0:
        return False, v0, v1
    c0 = v0
    c1 = v1
    if v0[2] < 0.0:
        c0 = (v0 * v1[2] - v1 * v0[2]) / (v1[2] - v0[2])
    if v1[2] < 0.0:
        c1 = (v0 * v1[2] - v1 * v0[2]) / (v1[2] - v0[2])
    return True, c0, c1


@wp.func
def line_parameters(v0: wp.vec3f, v1: wp.vec3f):
    """Closest point vo, distance d and tangent wt of the line through v0, v1,
    with the line parameters l0 and l1 of both endpoints."""
    wt = wp.normalize(v1 - v0)
    l0 = wp.dot(v0, wt)
    l1 = wp.dot(v1, wt)
    vo = v0 - l0 * wt
    d = wp.length(vo)
    return vo, d, wt, l0, l1


@wp.func
def line_integral(
    l0: wp.float64, l: wp.float64, d: wp.float64, vo_z: wp.float64, wt_z: wp.float64
) -> wp.float64:
    """Cosine integral over the line parameters [l0, l].

    Written as a difference so that segments far from the foot of the
    perpendicular, or close to the shading point, do not cancel.
    """
    d2 = d * d
    a = d2 + l0 * l0
    b = d2 + l * l
    dl = l - l0
    # atan(l / d) - atan(l0 / d)
    angle = wp.atan2(d * dl, d2 + l * l0)
    vo_part = dl * (d2 - l * l0) / (d * a * b) + angle / d2
    wt_part = d * dl * (l + l0) / (a * b)
    return vo_part * vo_z + wt_part * wt_z


@wp.func
def line_cdf(
    l: wp.float64,
    l0: wp.float64,
    d: wp.float64,
    vo_z: wp.float64,
    wt_z: wp.float64,
    normalization: wp.float64,
) -> wp.float64:
    return line_integral(l0, l, d, vo_z, wt_z) / normalization


@wp.func
def line_pdf(
    l: wp.float64, d: wp.float64, vo_z: wp.float64, wt_z: wp.float64, normalization: wp.float64
) -> wp.float64:
    d2l2 = d * d + l * l
    return wp.float64(2.0) * d * (vo_z + l * wt_z) / (normalization * d2l2 * d2l2)


@wp.func
def line_weight(v0: wp.vec3f, v1: wp.vec3f) -> float:
    """Unnormalized cosine integral over a local space segment above the
    horizon."""
    vo, d, wt, l0, l1 = line_parameters(v0, v1)
    if d < 1e-8 or l1 - l0 <= 0.0:
        return 0.0
    w = float(
        line_integral(
            wp.float64(l0), wp.float64(l1), wp.float64(d), wp.float64(vo[2]), wp.float64(wt[2])
        )
    )
    assert wp.isfinite(w)
    if not wp.isfinite(w):
        return 0.0
    return wp.max(w, 0.0)


@wp.func
def invert_line_cdf(
    u: float, l0: float, l1: float, d: float, vo_z: float, wt_z: float
):
    """Solve line_cdf(l) = u for l in [l0, l1].

    Newton steps are taken inside a bisection bracket that is narrowed on
    every iteration, the result always stays inside [l0, l1]. Returns the
    solution and its pdf, a non-positive pdf marks a failure.
    """
    a = wp.float64(l0)
    b = wp.float64(l1)
    d64 = wp.float64(d)
    vz = wp.float64(vo_z)
    wz = wp.float64(wt_z)
    target = wp.float64(u)
    normalization = line_integral(a, b, d64, vz, wz)
    if not (normalization > wp.float64(0.0)):
        return l0, 0.0

    lo = a
    hi = b
    l = a + target * (b - a)
    for i in range(20):
        if l < lo or l > hi:
            l = wp.float64(0.5) * (lo + hi)
        value = line_cdf(l, a, d64, vz, wz, normalization) - target
        if wp.abs(value) < wp.float64(1e-6):
            break
        if value > wp.float64(0.0):
            hi = l
        else:
            lo = l
        # Out of iterations, l is a bracket end
        if i == 19:
            break
        derivative = line_pdf(l, d64, vz, wz, normalization)
        if derivative > wp.float64(0.0):
            l = l - value / derivative
        else:
            l = wp.float64(0.5) * (lo + hi)

    l = wp.clamp(l, a, b)
    pdf = float(line_pdf(l, d64, vz, wz, normalization))
    assert wp.isfinite(pdf)
    if not wp.isfinite(pdf):
        return l0, 0.0
    return float(l), pdf
