import math

import numpy as np
import pytest
import torch
import warp as wp

from edgediff.ltc import (
    LTC_SIZE,
    LTC_SPHERE_SIZE,
    LTC_TABLE_VERSION,
    _load_host_tables,
    fit_matrix_table,
    fit_sphere_table,
    invert_line_cdf,
    line_parameters,
    line_weight,
    ltc_sphere_integral,
    LTCTables,
    save_ltc_tables,
)


@wp.kernel
def invert_line_kernel(
    v0: wp.vec3f,
    v1: wp.vec3f,
    u: wp.array(dtype=wp.float32),
    params: wp.array(dtype=wp.float32),
    ls: wp.array(dtype=wp.float32),
    pdfs: wp.array(dtype=wp.float32),
):
    tid = wp.tid()
    vo, d, wt, l0, l1 = line_parameters(v0, v1)
    l, pdf = invert_line_cdf(u[tid], l0, l1, d, vo[2], wt[2])
    ls[tid] = l
    pdfs[tid] = pdf
    if tid == 0:
        params[0] = l0
        params[1] = l1
        params[2] = d
        params[3] = vo[2]
        params[4] = wt[2]


@wp.kernel
def line_weight_kernel(v0: wp.vec3f, v1: wp.vec3f, out: wp.array(dtype=wp.float32)):
    out[0] = line_weight(v0, v1)


def integral(l, d, vo_z, wt_z):
    return (l / (d * (d * d + l * l)) + math.atan(l / d) / (d * d)) * vo_z + (
        l * l / (d * (d * d + l * l))
    ) * wt_z


def invert(v0, v1, u):
    u_t = torch.tensor(u, dtype=torch.float32)
    params = torch.zeros(5)
    ls = torch.zeros(len(u))
    pdfs = torch.zeros(len(u))
    wp.launch(
        invert_line_kernel,
        dim=len(u),
        inputs=[
            wp.vec3f(*v0),
            wp.vec3f(*v1),
            wp.from_torch(u_t),
            wp.from_torch(params),
            wp.from_torch(ls),
            wp.from_torch(pdfs),
        ],
        device="cpu",
    )
    return params.tolist(), ls.tolist(), pdfs.tolist()


def line_cdf_reference(l, l0, l1, d, vo_z, wt_z):
    i0 = integral(l0, d, vo_z, wt_z)
    return (integral(l, d, vo_z, wt_z) - i0) / (integral(l1, d, vo_z, wt_z) - i0)


def line_pdf_reference(l, l0, l1, d, vo_z, wt_z):
    normalization = integral(l1, d, vo_z, wt_z) - integral(l0, d, vo_z, wt_z)
    return 2.0 * d * (vo_z + l * wt_z) / (normalization * (d * d + l * l) ** 2)


@pytest.mark.parametrize(
    "v0, v1",
    [
        ((-1.0, 0.3, 0.5), (1.0, 0.2, 0.8)),
        ((0.2, -2.0, 0.1), (0.3, 3.0, 0.05)),
        # Passes close to the shading point
        ((-1.0, 0.002, 0.01), (1.0, 0.002, 0.01)),
        # One sided, starting next to the shading point
        ((0.1, 0.0, 1e-3), (3.0, 0.0, 1e-3)),
        ((0.5, 0.2, 0.3), (4.0, 0.1, 0.6)),
        ((-3.0, 0.1, 0.2), (-0.05, 0.0, 0.01)),
    ],
)
def test_line_cdf_inversion(v0, v1):
    u = [i / 40.0 for i in range(40)] + [0.999]
    (l0, l1, d, vo_z, wt_z), ls, pdfs = invert(v0, v1, u)

    assert line_cdf_reference(l1, l0, l1, d, vo_z, wt_z) == pytest.approx(1.0)
    for ui, l, pdf in zip(u, ls, pdfs):
        assert l0 <= l <= l1
        assert abs(line_cdf_reference(l, l0, l1, d, vo_z, wt_z) - ui) < 1e-5
        assert pdf == pytest.approx(line_pdf_reference(l, l0, l1, d, vo_z, wt_z), rel=1e-4)


def test_line_weight_below_horizon_is_zero():
    out = torch.zeros(1)
    wp.launch(
        line_weight_kernel,
        dim=1,
        inputs=[wp.vec3f(0.0, 0.0, -1.0), wp.vec3f(1.0, 0.0, -1.0), wp.from_torch(out)],
        device="cpu",
    )
    assert float(out[0]) == 0.0


def test_sphere_table_matches_the_unclipped_form_factor():
    size = 8
    tab = fit_sphere_table(size, n_theta=64, n_phi=64).reshape(size, size)

    assert np.all((tab >= 0.0) & (tab <= 1.0))
    # Sphere straight above the normal is never clipped
    np.testing.assert_allclose(tab[1:, -1], 1.0, rtol=1e-2)
    # Sphere straight below is fully clipped
    np.testing.assert_allclose(tab[1:-1, 0], 0.0, atol=1e-6)


def test_small_matrix_fit_is_finite():
    tab = fit_matrix_table(4, num_samples=8)
    assert tab.shape == (16, 3, 3)
    assert np.all(np.isfinite(tab))
    assert np.all(np.abs(np.linalg.det(tab.astype(np.float64))) > 0)


def test_tables_are_loaded_from_disk(tmp_path):
    tab_m = np.tile(np.eye(3, dtype=np.float32), (LTC_SIZE * LTC_SIZE, 1, 1))
    tab_sphere = np.linspace(0, 1, LTC_SPHERE_SIZE * LTC_SPHERE_SIZE).astype(np.float32)
    path = str(tmp_path / "ltc.npz")
    save_ltc_tables(path, tab_m, tab_sphere)

    loaded_m, loaded_sphere = _load_host_tables(path)
    np.testing.assert_array_equal(loaded_m, tab_m)
    np.testing.assert_array_equal(loaded_sphere, tab_sphere)


def test_table_version_is_checked(tmp_path):
    path = str(tmp_path / "old.npz")
    np.savez(
        path,
        version=np.int32(LTC_TABLE_VERSION + 1),
        tab_m=np.zeros((LTC_SIZE * LTC_SIZE, 3, 3), dtype=np.float32),
        tab_sphere=np.zeros(LTC_SPHERE_SIZE * LTC_SPHERE_SIZE, dtype=np.float32),
    )
    with pytest.raises(ValueError):
        _load_host_tables(path)

    path = str(tmp_path / "bad.npz")
    np.savez(
        path,
        version=np.int32(LTC_TABLE_VERSION),
        tab_m=np.zeros((4, 3, 3), dtype=np.float32),
        tab_sphere=np.zeros(LTC_SPHERE_SIZE * LTC_SPHERE_SIZE, dtype=np.float32),
    )
    with pytest.raises(ValueError):
        _load_host_tables(path)


@wp.kernel
def sphere_integral_kernel(
    ltc: LTCTables, center: wp.vec3f, radius: float, out: wp.array(dtype=wp.float32)
):
    out[0] = ltc_sphere_integral(ltc, center, radius, wp.identity(n=3, dtype=wp.float32))


def sphere_integral(ltc, center, radius):
    out = torch.zeros(1)
    wp.launch(
        sphere_integral_kernel,
        dim=1,
        inputs=[ltc, wp.vec3f(*center), radius, wp.from_torch(out)],
        device="cpu",
    )
    return float(out[0])


def test_sphere_around_the_shading_point_covers_the_hemisphere(ltc):
    assert sphere_integral(ltc, (0.0, 0.0, 0.1), 1.0) == pytest.approx(math.pi)
    assert 0.0 < sphere_integral(ltc, (0.0, 0.0, 3.0), 1.0) < 1.0
