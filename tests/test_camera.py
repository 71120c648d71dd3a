import math

import numpy as np
import pytest
import torch
import warp as wp

from edgediff.camera import (
    WarpCamera,
    d_project,
    generate_camera_rays,
    project,
    screen_to_camera,
    camera_to_screen,
)

from conftest import fov_factor, look_forward_camera


@wp.kernel
def project_kernel(
    camera: WarpCamera,
    v0: wp.vec3f,
    v1: wp.vec3f,
    g0: wp.vec2f,
    g1: wp.vec2f,
    screen: wp.array(dtype=wp.vec2f),
    d_v: wp.array(dtype=wp.vec3f),
    d_fov: wp.array(dtype=wp.float32),
):
    ok, v0_ss, v1_ss = project(camera, v0, v1)
    screen[0] = v0_ss
    screen[1] = v1_ss
    d_v0, d_v1, d_w2c, d_fov_factor = d_project(camera, v0, v1, g0, g1)
    d_v[0] = d_v0
    d_v[1] = d_v1
    d_fov[0] = d_fov_factor


@wp.kernel
def screen_roundtrip_kernel(
    camera: WarpCamera,
    screen_pos: wp.array(dtype=wp.vec2f),
    out: wp.array(dtype=wp.vec2f),
):
    tid = wp.tid()
    out[tid] = camera_to_screen(camera, screen_to_camera(camera, screen_pos[tid]))


def project_reference(camera, f, v0, v1):
    """Float64 projection with near plane clipping."""
    w2c = camera.w2c().double().numpy()
    p0 = w2c[:3, :3] @ v0 + w2c[:3, 3]
    p1 = w2c[:3, :3] @ v1 + w2c[:3, 3]
    if not camera.fisheye:
        near = camera.clip_near
        if p0[2] < near:
            p0 = p0 + (near - p0[2]) / (p1[2] - p0[2]) * (p1 - p0)
        if p1[2] < near:
            p1 = p0 + (near - p0[2]) / (p1[2] - p0[2]) * (p1 - p0)

    def to_screen(p):
        if not camera.fisheye:
            aspect = camera.width / camera.height
            return np.array(
                [0.5 + 0.5 * f * p[0] / p[2], 0.5 - 0.5 * f * aspect * p[1] / p[2]]
            )
        rho = math.hypot(p[0], p[1])
        h = math.atan2(rho, p[2]) / (math.pi * rho)
        return np.array([0.5 + p[0] * h, 0.5 - p[1] * h])

    return to_screen(p0), to_screen(p1)


def run_project(camera, v0, v1, g0, g1):
    screen = torch.zeros((2, 2))
    d_v = torch.zeros((2, 3))
    d_fov = torch.zeros(1)
    wp.launch(
        project_kernel,
        dim=1,
        inputs=[
            camera.to_warp(),
            wp.vec3f(*v0),
            wp.vec3f(*v1),
            wp.vec2f(*g0),
            wp.vec2f(*g1),
            wp.from_torch(screen, dtype=wp.vec2f),
            wp.from_torch(d_v, dtype=wp.vec3f),
            wp.from_torch(d_fov),
        ],
        device="cpu",
    )
    return screen.double().numpy(), d_v.double().numpy(), float(d_fov[0])


@pytest.mark.parametrize(
    "fisheye, v0, v1",
    [
        (False, (0.3, -0.2, 2.0), (-0.4, 0.5, 3.0)),
        # Crosses the near plane
        (False, (0.3, -0.2, 2.0), (-0.4, 0.5, -1.0)),
        (True, (0.3, -0.2, 2.0), (-1.4, 0.5, 0.5)),
    ],
)
def test_projection_adjoint_matches_finite_differences(fisheye, v0, v1):
    camera = look_forward_camera(fov=60.0, width=40, height=30, fisheye=fisheye)
    f = fov_factor(60.0)
    g0 = (0.7, -0.3)
    g1 = (-0.2, 0.9)
    v0 = np.array(v0)
    v1 = np.array(v1)

    screen, d_v, d_fov = run_project(camera, v0, v1, g0, g1)
    s0, s1 = project_reference(camera, f, v0, v1)
    np.testing.assert_allclose(screen[0], s0, rtol=1e-5, atol=1e-5)
    np.testing.assert_allclose(screen[1], s1, rtol=1e-5, atol=1e-5)

    def loss(a, b, fov_f=f):
        r0, r1 = project_reference(camera, fov_f, a, b)
        return np.dot(g0, r0) + np.dot(g1, r1)

    eps = 1e-6
    for k in range(3):
        e = np.zeros(3)
        e[k] = eps
        fd0 = (loss(v0 + e, v1) - loss(v0 - e, v1)) / (2 * eps)
        fd1 = (loss(v0, v1 + e) - loss(v0, v1 - e)) / (2 * eps)
        assert d_v[0, k] == pytest.approx(fd0, rel=1e-3, abs=1e-4)
        assert d_v[1, k] == pytest.approx(fd1, rel=1e-3, abs=1e-4)

    if not fisheye:
        fd_fov = (loss(v0, v1, f + eps) - loss(v0, v1, f - eps)) / (2 * eps)
        assert d_fov == pytest.approx(fd_fov, rel=1e-3, abs=1e-4)


@pytest.mark.parametrize("fisheye", [False, True])
def test_screen_to_camera_inverts_camera_to_screen(fisheye):
    camera = look_forward_camera(fisheye=fisheye)
    screen_pos = torch.tensor([[0.5, 0.5], [0.1, 0.8], [0.9, 0.25], [0.3, 0.3]])
    out = torch.zeros_like(screen_pos)
    wp.launch(
        screen_roundtrip_kernel,
        dim=4,
        inputs=[
            camera.to_warp(),
            wp.from_torch(screen_pos, dtype=wp.vec2f),
            wp.from_torch(out, dtype=wp.vec2f),
        ],
        device="cpu",
    )
    assert torch.allclose(out, screen_pos, atol=1e-5)


def test_camera_rays_point_through_the_screen():
    camera = look_forward_camera(fov=90.0)
    org, dir = generate_camera_rays(camera, torch.tensor([[0.5, 0.5], [1.0, 0.5]]))

    assert torch.allclose(org, torch.zeros_like(org))
    assert torch.allclose(dir[0], torch.tensor([0.0, 0.0, 1.0]), atol=1e-6)
    # Right edge of a 90 degree view, the camera right axis is world -x
    expected = torch.tensor([-1.0, 0.0, 1.0]) / math.sqrt(2.0)
    assert torch.allclose(dir[1], expected, atol=1e-6)
