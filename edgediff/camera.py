from dataclasses import dataclass
import math

import torch
import warp as wp

from .warp_interop import launch_kernel_from_torch


@wp.struct
class WarpCamera:
    cam_to_world: wp.mat44f
    world_to_cam: wp.mat44f
    fov_factor: float
    aspect_ratio: float
    clip_near: float
    width: int
    height: int
    fisheye: int


@wp.func
def camera_origin(camera: WarpCamera) -> wp.vec3f:
    return wp.transform_point(camera.cam_to_world, wp.vec3f(0.0, 0.0, 0.0))


@wp.func
def camera_to_screen(camera: WarpCamera, pc: wp.vec3f) -> wp.vec2f:
    if camera.fisheye == 0:
        x = pc[0] / pc[2]
        y = pc[1] / pc[2]
        return wp.vec2f(
            0.5 + 0.5 * camera.fov_factor * x,
            0.5 - 0.5 * camera.fov_factor * camera.aspect_ratio * y,
        )
    # Equi-angular fisheye, the image circle covers the forward hemisphere
    rho = wp.sqrt(pc[0] * pc[0] + pc[1] * pc[1])
    if rho < 1e-10:
        return wp.vec2f(0.5, 0.5)
    theta = wp.atan2(rho, pc[2])
    h = theta / (wp.pi * rho)
    return wp.vec2f(0.5 + pc[0] * h, 0.5 - pc[1] * h)


@wp.func
def d_camera_to_screen(camera: WarpCamera, pc: wp.vec3f):
    """Jacobian of camera_to_screen.

    Returns the gradients of the screen x and y coordinates w.r.t. the camera
    space point, and their derivatives w.r.t. the fov factor.
    """
    if camera.fisheye == 0:
        f = camera.fov_factor
        a = camera.aspect_ratio
        inv_z = 1.0 / pc[2]
        dx_dpc = wp.vec3f(0.5 * f * inv_z, 0.0, -0.5 * f * pc[0] * inv_z * inv_z)
        dy_dpc = wp.vec3f(0.0, -0.5 * f * a * inv_z, 0.5 * f * a * pc[1] * inv_z * inv_z)
        return dx_dpc, dy_dpc, 0.5 * pc[0] * inv_z, -0.5 * a * pc[1] * inv_z
    rho = wp.sqrt(pc[0] * pc[0] + pc[1] * pc[1])
    if rho < 1e-10:
        inv_z = 1.0 / (wp.pi * pc[2])
        return wp.vec3f(inv_z, 0.0, 0.0), wp.vec3f(0.0, -inv_z, 0.0), 0.0, 0.0
    theta = wp.atan2(rho, pc[2])
    h = theta / (wp.pi * rho)
    r2 = rho * rho + pc[2] * pc[2]
    dtheta = wp.vec3f(pc[2] * pc[0] / rho, pc[2] * pc[1] / rho, -rho) / r2
    drho = wp.vec3f(pc[0] / rho, pc[1] / rho, 0.0)
    dh = (dtheta * rho - theta * drho) / (wp.pi * rho * rho)
    dx_dpc = pc[0] * dh + wp.vec3f(h, 0.0, 0.0)
    dy_dpc = -(pc[1] * dh + wp.vec3f(0.0, h, 0.0))
    return dx_dpc, dy_dpc, 0.0, 0.0


@wp.func
def screen_to_camera(camera: WarpCamera, screen_pos: wp.vec2f) -> wp.vec3f:
    if camera.fisheye == 0:
        return wp.vec3f(
            (2.0 * screen_pos[0] - 1.0) / camera.fov_factor,
            -(2.0 * screen_pos[1] - 1.0) / (camera.fov_factor * camera.aspect_ratio),
            1.0,
        )
    a = 2.0 * screen_pos[0] - 1.0
    b = -(2.0 * screen_pos[1] - 1.0)
    r = wp.sqrt(a * a + b * b)
    if r < 1e-10:
        return wp.vec3f(0.0, 0.0, 1.0)
    theta = 0.5 * wp.pi * r
    s = wp.sin(theta) / r
    return wp.vec3f(a * s, b * s, wp.cos(theta))


@wp.func
def d_screen_to_camera(camera: WarpCamera, screen_pos: wp.vec2f):
    if camera.fisheye == 0:
        return (
            wp.vec3f(2.0 / camera.fov_factor, 0.0, 0.0),
            wp.vec3f(0.0, -2.0 / (camera.fov_factor * camera.aspect_ratio), 0.0),
        )
    a = 2.0 * screen_pos[0] - 1.0
    b = -(2.0 * screen_pos[1] - 1.0)
    r = wp.sqrt(a * a + b * b)
    if r < 1e-6:
        return wp.vec3f(wp.pi, 0.0, 0.0), wp.vec3f(0.0, -wp.pi, 0.0)
    theta = 0.5 * wp.pi * r
    g = wp.sin(theta) / r
    dg_dr = (0.5 * wp.pi * wp.cos(theta) * r - wp.sin(theta)) / (r * r)
    dz_dr = -0.5 * wp.pi * wp.sin(theta)
    # d dir / d a and d dir / d b, then chain with da/dx = 2, db/dy = -2
    d_da = wp.vec3f(g + a * a * dg_dr / r, b * a * dg_dr / r, dz_dr * a / r)
    d_db = wp.vec3f(a * b * dg_dr / r, g + b * b * dg_dr / r, dz_dr * b / r)
    return 2.0 * d_da, -2.0 * d_db


@wp.func
def clip_near_plane(p0: wp.vec3f, p1: wp.vec3f, clip_near: float):
    # Clip the camera space segment p0 -> p1 against z = clip_near.
    # Returns validity, the clipped endpoints and their interpolation parameters.
    t0 = float(0.0)
    t1 = float(1.0)
    if p0[2] < clip_near and p1[2] < clip_near:
        return False, p0, p1, t0, t1
    if p0[2] < clip_near:
        t0 = (clip_near - p0[2]) / (p1[2] - p0[2])
    if p1[2] < clip_near:
        t1 = (clip_near - p0[2]) / (p1[2] - p0[2])
    return True, p0 + t0 * (p1 - p0), p0 + t1 * (p1 - p0), t0, t1


@wp.func
def effective_clip_near(camera: WarpCamera) -> float:
    # Fisheye cameras see behind the image plane, only perspective ones clip
    if camera.fisheye != 0:
        return -1e30
    return camera.clip_near


@wp.func
def project(camera: WarpCamera, v0: wp.vec3f, v1: wp.vec3f):
    p0 = wp.transform_point(camera.world_to_cam, v0)
    p1 = wp.transform_point(camera.world_to_cam, v1)
    if camera.fisheye != 0:
        if wp.length_sq(p0) < 1e-20 or wp.length_sq(p1) < 1e-20:
            return False, wp.vec2f(0.0, 0.0), wp.vec2f(0.0, 0.0)
    valid, c0, c1, t0, t1 = clip_near_plane(p0, p1, effective_clip_near(camera))
    if not valid:
        return False, wp.vec2f(0.0, 0.0), wp.vec2f(0.0, 0.0)
    return True, camera_to_screen(camera, c0), camera_to_screen(camera, c1)


@wp.func
def d_clip_endpoint(
    p0: wp.vec3f, p1: wp.vec3f, t: float, clip_near: float, d_c: wp.vec3f
):
    # Adjoint of c = p0 + t (p1 - p0) with t = (clip_near - z0) / (z1 - z0)
    if t <= 0.0:
        return d_c, wp.vec3f(0.0, 0.0, 0.0)
    if t >= 1.0:
        return wp.vec3f(0.0, 0.0, 0.0), d_c
    dz = p1[2] - p0[2]
    d_t = wp.dot(d_c, p1 - p0)
    d_p0 = (1.0 - t) * d_c + wp.vec3f(0.0, 0.0, d_t * (clip_near - p1[2]) / (dz * dz))
    d_p1 = t * d_c - wp.vec3f(0.0, 0.0, d_t * (clip_near - p0[2]) / (dz * dz))
    return d_p0, d_p1


@wp.func
def d_project(
    camera: WarpCamera,
    v0: wp.vec3f,
    v1: wp.vec3f,
    d_v0_ss: wp.vec2f,
    d_v1_ss: wp.vec2f,
):
    """Adjoint of project().

    Returns the derivatives w.r.t. both world space endpoints, the
    world_to_cam matrix and the fov factor.
    """
    p0 = wp.transform_point(camera.world_to_cam, v0)
    p1 = wp.transform_point(camera.world_to_cam, v1)
    clip_near = effective_clip_near(camera)
    valid, c0, c1, t0, t1 = clip_near_plane(p0, p1, clip_near)
    if not valid:
        return (
            wp.vec3f(0.0, 0.0, 0.0),
            wp.vec3f(0.0, 0.0, 0.0),
            wp.mat44f(),
            0.0,
        )

    dx0, dy0, dfx0, dfy0 = d_camera_to_screen(camera, c0)
    dx1, dy1, dfx1, dfy1 = d_camera_to_screen(camera, c1)
    d_c0 = d_v0_ss[0] * dx0 + d_v0_ss[1] * dy0
    d_c1 = d_v1_ss[0] * dx1 + d_v1_ss[1] * dy1
    d_fov_factor = (
        d_v0_ss[0] * dfx0 + d_v0_ss[1] * dfy0 + d_v1_ss[0] * dfx1 + d_v1_ss[1] * dfy1
    )

    d_p0a, d_p1a = d_clip_endpoint(p0, p1, t0, clip_near, d_c0)
    d_p0b, d_p1b = d_clip_endpoint(p0, p1, t1, clip_near, d_c1)
    d_p0 = d_p0a + d_p0b
    d_p1 = d_p1a + d_p1b

    d_v0 = wp.transform_vector(wp.transpose(camera.world_to_cam), d_p0)
    d_v1 = wp.transform_vector(wp.transpose(camera.world_to_cam), d_p1)
    d_world_to_cam = wp.outer(
        wp.vec4f(d_p0[0], d_p0[1], d_p0[2], 0.0), wp.vec4f(v0[0], v0[1], v0[2], 1.0)
    ) + wp.outer(
        wp.vec4f(d_p1[0], d_p1[1], d_p1[2], 0.0), wp.vec4f(v1[0], v1[1], v1[2], 1.0)
    )
    return d_v0, d_v1, d_world_to_cam, d_fov_factor


@wp.func
def sample_primary(camera: WarpCamera, screen_pos: wp.vec2f):
    dir_local = wp.normalize(screen_to_camera(camera, screen_pos))
    org = camera_origin(camera)
    dir = wp.normalize(wp.transform_vector(camera.cam_to_world, dir_local))
    return org, dir


@wp.func
def in_screen(camera: WarpCamera, pt: wp.vec2f) -> bool:
    return pt[0] >= 0.0 and pt[0] < 1.0 and pt[1] >= 0.0 and pt[1] < 1.0


@wp.func
def clip_line(v0: wp.vec2f, v1: wp.vec2f):
    # Liang-Barsky against the unit screen square
    d = v1 - v0
    t0 = float(0.0)
    t1 = float(1.0)
    visible = int(1)
    for i in range(4):
        p = float(0.0)
        q = float(0.0)
        if i == 0:
            p = -d[0]
            q = v0[0]
        elif i == 1:
            p = d[0]
            q = 1.0 - v0[0]
        elif i == 2:
            p = -d[1]
            q = v0[1]
        else:
            p = d[1]
            q = 1.0 - v0[1]
        if p == 0.0:
            if q < 0.0:
                visible = 0
        else:
            r = q / p
            if p < 0.0:
                if r > t1:
                    visible = 0
                elif r > t0:
                    t0 = r
            else:
                if r < t0:
                    visible = 0
                elif r < t1:
                    t1 = r
    return visible == 1, v0 + t0 * d, v0 + t1 * d


@dataclass
class TorchCamera:
    position: torch.Tensor
    look_at: torch.Tensor
    up: torch.Tensor
    fov: float
    width: int
    height: int
    fisheye: bool = False
    clip_near: float = 1e-2

    def forward(self) -> torch.Tensor:
        f = self.look_at - self.position
        return f / torch.linalg.norm(f)

    def c2w(self) -> torch.Tensor:
        device = self.position.device
        dtype = self.position.dtype

        f = self.forward()
        r = torch.cross(f, self.up, dim=-1)
        r = r / torch.linalg.norm(r)
        u = torch.cross(r, f, dim=-1)

        R_cw = torch.stack([r, u, f], dim=1)

        M = torch.eye(4, dtype=dtype, device=device)
        M[:3, :3] = R_cw
        M[:3, 3] = self.position
        return M

    def w2c(self) -> torch.Tensor:
        return torch.linalg.inv(self.c2w())

    def fov_factor(self) -> float:
        return 1.0 / math.tan(0.5 * math.radians(self.fov))

    def to_warp(self):
        c2w = self.c2w().detach().cpu().to(torch.float32)
        w2c = torch.linalg.inv(c2w)

        warp_cam = WarpCamera()
        warp_cam.cam_to_world = wp.mat44f(*c2w.flatten().tolist())
        warp_cam.world_to_cam = wp.mat44f(*w2c.flatten().tolist())
        warp_cam.fov_factor = self.fov_factor()
        warp_cam.aspect_ratio = float(self.width) / float(self.height)
        warp_cam.clip_near = self.clip_near
        warp_cam.width = self.width
        warp_cam.height = self.height
        warp_cam.fisheye = 1 if self.fisheye else 0
        return warp_cam

    def to_device(self, device: torch.device | str):
        dev = torch.device(device)
        return TorchCamera(
            position=self.position.to(dev),
            look_at=self.look_at.to(dev),
            up=self.up.to(dev),
            fov=self.fov,
            width=self.width,
            height=self.height,
            fisheye=self.fisheye,
            clip_near=self.clip_near,
        )

    def origin(self) -> torch.Tensor:
        return self.position


@wp.kernel(enable_backward=False)
def camera_rays_kernel(
    camera: WarpCamera,
    screen_pos: wp.array(dtype=wp.vec2f),
    ray_org: wp.array(dtype=wp.vec3f),
    ray_dir: wp.array(dtype=wp.vec3f),
):
    tid = wp.tid()
    org, dir = sample_primary(camera, screen_pos[tid])
    ray_org[tid] = org
    ray_dir[tid] = dir


def generate_camera_rays(camera: TorchCamera, screen_pos: torch.Tensor):
    """World space rays through [N, 2] screen positions."""
    device = screen_pos.device
    num_rays = screen_pos.shape[0]
    ray_org = torch.zeros((num_rays, 3), dtype=torch.float32, device=device)
    ray_dir = torch.zeros((num_rays, 3), dtype=torch.float32, device=device)
    launch_kernel_from_torch(
        device,
        camera_rays_kernel,
        num_rays,
        [
            camera.to_warp(),
            wp.from_torch(screen_pos.to(torch.float32).contiguous(), dtype=wp.vec2f),
            wp.from_torch(ray_org, dtype=wp.vec3f),
            wp.from_torch(ray_dir, dtype=wp.vec3f),
        ],
    )
    return ray_org, ray_dir
