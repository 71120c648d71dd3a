import torch
import warp as wp

from .camera import (
    WarpCamera,
    camera_origin,
    camera_to_screen,
    d_camera_to_screen,
    d_project,
    d_screen_to_camera,
    in_screen,
    project,
    sample_primary,
    screen_to_camera,
)
from .distribution import sample_distribution
from .geometry import Edges, Shapes, get_v0, get_v1, is_silhouette
from .records import (
    DCameras,
    DVertices,
    Intersections,
    PrimaryEdgeRecords,
    RayDifferentials,
    Rays,
)
from .warp_interop import launch_kernel_from_torch

FISHEYE_RAY_OFFSET = wp.constant(1e-5)


@wp.func
def clear_primary_outputs(
    idx: int,
    records: PrimaryEdgeRecords,
    rays: Rays,
    ray_differentials: RayDifferentials,
    throughputs: wp.array(dtype=wp.vec3f),
    channel_multipliers: wp.array2d(dtype=wp.float32),
):
    zero = wp.vec3f(0.0, 0.0, 0.0)
    records.edge_id[idx] = -1
    records.edge_pt[idx] = wp.vec2f(0.0, 0.0)
    for side in range(2):
        i = 2 * idx + side
        rays.org[i] = zero
        rays.dir[i] = zero
        rays.tmin[i] = 0.0
        rays.tmax[i] = 0.0
        ray_differentials.org_dx[i] = zero
        ray_differentials.org_dy[i] = zero
        ray_differentials.dir_dx[i] = zero
        ray_differentials.dir_dy[i] = zero
        throughputs[i] = zero
        for d in range(channel_multipliers.shape[1]):
            channel_multipliers[i, d] = 0.0


@wp.func
def pixel_index(camera: WarpCamera, screen_pos: wp.vec2f) -> int:
    xi = wp.clamp(int(screen_pos[0] * float(camera.width)), 0, camera.width - 1)
    yi = wp.clamp(int(screen_pos[1] * float(camera.height)), 0, camera.height - 1)
    return yi * camera.width + xi


@wp.kernel(enable_backward=False)
def sample_primary_edges_kernel(
    camera: WarpCamera,
    shapes: Shapes,
    edges: Edges,
    edges_pmf: wp.array(dtype=wp.float32),
    edges_cdf: wp.array(dtype=wp.float32),
    samples: wp.array(dtype=wp.vec2f),
    d_rendered_image: wp.array2d(dtype=wp.float32),
    radiance_dimension: int,
    ray_offset: float,
    records: PrimaryEdgeRecords,
    rays: Rays,
    ray_differentials: RayDifferentials,
    throughputs: wp.array(dtype=wp.vec3f),
    channel_multipliers: wp.array2d(dtype=wp.float32),
):
    idx = wp.tid()
    clear_primary_outputs(idx, records, rays, ray_differentials, throughputs, channel_multipliers)

    sample = samples[idx]
    edge_id = sample_distribution(edges_cdf, sample[0])
    pmf = edges_pmf[edge_id]
    if pmf <= 0.0:
        return
    v0 = get_v0(shapes, edges, edge_id)
    v1 = get_v1(shapes, edges, edge_id)
    ok, v0_ss, v1_ss = project(camera, v0, v1)
    if not ok:
        return
    if not is_silhouette(shapes, edges, edge_id, camera_origin(camera)):
        return

    edge_pt = wp.vec2f(0.0, 0.0)
    upper_pt = wp.vec2f(0.0, 0.0)
    lower_pt = wp.vec2f(0.0, 0.0)
    jacobian = float(1.0)
    if camera.fisheye == 0:
        # Uniform sample on the screen space segment
        edge_pt = v0_ss + sample[1] * (v1_ss - v0_ss)
        if not in_screen(camera, edge_pt):
            return
        # Points into the half space where the edge equation is positive
        edge_dir = wp.normalize(v0_ss - v1_ss)
        half_space_normal = wp.vec2f(edge_dir[1], -edge_dir[0])
        upper_pt = edge_pt + half_space_normal * ray_offset
        lower_pt = edge_pt - half_space_normal * ray_offset
    else:
        # The edge is a curve on screen, sample it on the unprojected film
        v0_dir = screen_to_camera(camera, v0_ss)
        v1_dir = screen_to_camera(camera, v1_ss)
        v_dir3 = v1_dir - v0_dir
        edge_pt3 = v0_dir + sample[1] * v_dir3
        edge_pt = camera_to_screen(camera, edge_pt3)
        if not in_screen(camera, edge_pt):
            return

        # Edge equation alpha(p) = dot(p, cross(v0_dir, v1_dir))
        edge_normal = wp.cross(v0_dir, v1_dir)
        half_space_normal3 = wp.normalize(edge_normal)
        v0_local = wp.transform_point(camera.world_to_cam, v0)
        v1_local = wp.transform_point(camera.world_to_cam, v1)
        edge_local = v0_local + sample[1] * (v1_local - v0_local)
        # Smaller offsets for edges further away
        offset = FISHEYE_RAY_OFFSET / wp.length(edge_local)
        upper_pt = camera_to_screen(camera, wp.normalize(edge_pt3 + offset * half_space_normal3))
        lower_pt = camera_to_screen(camera, wp.normalize(edge_pt3 - offset * half_space_normal3))

        d_dir_dx, d_dir_dy = d_screen_to_camera(camera, edge_pt)
        d_alpha_dx = wp.dot(d_dir_dx, edge_normal)
        d_alpha_dy = wp.dot(d_dir_dy, edge_normal)
        dirac_jacobian = 1.0 / wp.sqrt(d_alpha_dx * d_alpha_dx + d_alpha_dy * d_alpha_dy)
        # Screen space speed of the sample point along the edge
        dx_dpc, dy_dpc, dfx, dfy = d_camera_to_screen(camera, edge_pt3)
        line_jacobian = wp.length(wp.vec2f(wp.dot(dx_dpc, v_dir3), wp.dot(dy_dpc, v_dir3)))
        jacobian = line_jacobian * dirac_jacobian
        if not wp.isfinite(jacobian):
            return

    records.edge_id[idx] = edge_id
    records.edge_pt[idx] = edge_pt

    upper_org, upper_dir = sample_primary(camera, upper_pt)
    lower_org, lower_dir = sample_primary(camera, lower_pt)
    for side in range(2):
        i = 2 * idx + side
        rays.tmin[i] = 0.0
        rays.tmax[i] = wp.inf
    rays.org[2 * idx + 0] = upper_org
    rays.dir[2 * idx + 0] = upper_dir
    rays.org[2 * idx + 1] = lower_org
    rays.dir[2 * idx + 1] = lower_dir

    pixel_id = pixel_index(camera, edge_pt)
    rd = radiance_dimension
    d_color = wp.vec3f(
        d_rendered_image[pixel_id, rd + 0],
        d_rendered_image[pixel_id, rd + 1],
        d_rendered_image[pixel_id, rd + 2],
    )
    # For perspective cameras the edge length and the gradient of the edge
    # equation cancel, so the weight is 1 / pmf
    weight = jacobian / pmf
    assert wp.isfinite(weight)
    throughputs[2 * idx + 0] = d_color * weight
    throughputs[2 * idx + 1] = -d_color * weight
    for d in range(d_rendered_image.shape[1]):
        d_channel = d_rendered_image[pixel_id, d]
        channel_multipliers[2 * idx + 0, d] = d_channel * weight
        channel_multipliers[2 * idx + 1, d] = -d_channel * weight

    # Ray differentials by finite differences, scaled to half a pixel
    ray_org, ray_dir = sample_primary(camera, edge_pt)
    delta = 1e-3
    org_x, dir_x = sample_primary(camera, edge_pt + wp.vec2f(delta, 0.0))
    org_y, dir_y = sample_primary(camera, edge_pt + wp.vec2f(0.0, delta))
    pixel_size_x = 0.5 / float(camera.width)
    pixel_size_y = 0.5 / float(camera.height)
    for side in range(2):
        i = 2 * idx + side
        ray_differentials.org_dx[i] = pixel_size_x * (org_x - ray_org) / delta
        ray_differentials.org_dy[i] = pixel_size_y * (org_y - ray_org) / delta
        ray_differentials.dir_dx[i] = pixel_size_x * (dir_x - ray_dir) / delta
        ray_differentials.dir_dy[i] = pixel_size_y * (dir_y - ray_dir) / delta


@wp.kernel(enable_backward=False)
def update_primary_edge_weights_kernel(
    edges: Edges,
    records: PrimaryEdgeRecords,
    isects: Intersections,
    throughputs: wp.array(dtype=wp.vec3f),
    channel_multipliers: wp.array2d(dtype=wp.float32),
):
    idx = wp.tid()
    edge_id = records.edge_id[idx]
    if edge_id < 0:
        return
    shape_id = edges.shape_id[edge_id]
    f0 = edges.f0[edge_id]
    f1 = edges.f1[edge_id]
    connected = int(0)
    for side in range(2):
        i = 2 * idx + side
        tri_id = isects.tri_id[i]
        if isects.shape_id[i] == shape_id and (tri_id == f0 or tri_id == f1):
            connected = 1
    # At least one of the rays has to hit a face of the edge
    if connected == 0:
        for side in range(2):
            i = 2 * idx + side
            throughputs[i] = wp.vec3f(0.0, 0.0, 0.0)
            for d in range(channel_multipliers.shape[1]):
                channel_multipliers[i, d] = 0.0


@wp.kernel(enable_backward=False)
def compute_primary_edge_derivatives_kernel(
    camera: WarpCamera,
    shapes: Shapes,
    edges: Edges,
    records: PrimaryEdgeRecords,
    edge_contribs: wp.array(dtype=wp.float32),
    d_vertices: DVertices,
    d_cameras: DCameras,
):
    idx = wp.tid()
    for side in range(2):
        i = 2 * idx + side
        d_vertices.shape_id[i] = -1
        d_vertices.vertex_id[i] = -1
        d_vertices.d_v[i] = wp.vec3f(0.0, 0.0, 0.0)
    d_cameras.d_world_to_cam[idx] = wp.mat44f()
    d_cameras.d_fov_factor[idx] = 0.0

    edge_id = records.edge_id[idx]
    if edge_id < 0:
        return
    edge_contrib = edge_contribs[2 * idx + 0] + edge_contribs[2 * idx + 1]

    shape_id = edges.shape_id[edge_id]
    d_vertices.shape_id[2 * idx + 0] = shape_id
    d_vertices.shape_id[2 * idx + 1] = shape_id
    d_vertices.vertex_id[2 * idx + 0] = edges.v0[edge_id]
    d_vertices.vertex_id[2 * idx + 1] = edges.v1[edge_id]

    v0 = get_v0(shapes, edges, edge_id)
    v1 = get_v1(shapes, edges, edge_id)
    ok, v0_ss, v1_ss = project(camera, v0, v1)
    if not ok:
        return

    edge_pt = records.edge_pt[idx]
    d_v0_ss = wp.vec2f(0.0, 0.0)
    d_v1_ss = wp.vec2f(0.0, 0.0)
    if camera.fisheye == 0:
        # Derivatives of the screen space edge equation
        d_v0_ss = wp.vec2f(v1_ss[1] - edge_pt[1], edge_pt[0] - v1_ss[0])
        d_v1_ss = wp.vec2f(edge_pt[1] - v0_ss[1], v0_ss[0] - edge_pt[0])
    else:
        # alpha(p) = dot(p, cross(v0_dir, v1_dir)) on the unprojected film
        v0_dir = screen_to_camera(camera, v0_ss)
        v1_dir = screen_to_camera(camera, v1_ss)
        edge_dir = screen_to_camera(camera, edge_pt)
        d_v0_dir_x, d_v0_dir_y = d_screen_to_camera(camera, v0_ss)
        d_v1_dir_x, d_v1_dir_y = d_screen_to_camera(camera, v1_ss)
        c0 = wp.cross(v1_dir, edge_dir)
        c1 = wp.cross(edge_dir, v0_dir)
        d_v0_ss = wp.vec2f(wp.dot(c0, d_v0_dir_x), wp.dot(c0, d_v0_dir_y))
        d_v1_ss = wp.vec2f(wp.dot(c1, d_v1_dir_x), wp.dot(c1, d_v1_dir_y))

    d_v0, d_v1, d_world_to_cam, d_fov_factor = d_project(
        camera, v0, v1, d_v0_ss * edge_contrib, d_v1_ss * edge_contrib
    )
    d_vertices.d_v[2 * idx + 0] = d_v0
    d_vertices.d_v[2 * idx + 1] = d_v1
    d_cameras.d_world_to_cam[idx] = d_world_to_cam
    d_cameras.d_fov_factor[idx] = d_fov_factor


def sample_primary_edges(
    device,
    camera: WarpCamera,
    shapes: Shapes,
    edges: Edges,
    edges_pmf: torch.Tensor,
    edges_cdf: torch.Tensor,
    samples: torch.Tensor,
    d_rendered_image: torch.Tensor,
    radiance_dimension: int,
    ray_offset: float,
    records,
    rays,
    ray_differentials,
    throughputs: torch.Tensor,
    channel_multipliers: torch.Tensor,
):
    launch_kernel_from_torch(
        device,
        sample_primary_edges_kernel,
        samples.shape[0],
        [
            camera,
            shapes,
            edges,
            wp.from_torch(edges_pmf),
            wp.from_torch(edges_cdf),
            wp.from_torch(samples.contiguous(), dtype=wp.vec2f),
            wp.from_torch(d_rendered_image.contiguous()),
            radiance_dimension,
            ray_offset,
            records.to_warp(),
            rays.to_warp(),
            ray_differentials.to_warp(),
            wp.from_torch(throughputs, dtype=wp.vec3f),
            wp.from_torch(channel_multipliers),
        ],
    )


def update_primary_edge_weights(
    device,
    edges: Edges,
    records,
    isects,
    throughputs: torch.Tensor,
    channel_multipliers: torch.Tensor,
    enabled: bool = False,
):
    """Zero the ray pairs where neither ray hit a face of the sampled edge.

    Disabled unless enabled is set, contributions then pass through
    unchanged.
    """
    if not enabled:
        return
    launch_kernel_from_torch(
        device,
        update_primary_edge_weights_kernel,
        len(records),
        [
            edges,
            records.to_warp(),
            isects.to_warp(),
            wp.from_torch(throughputs, dtype=wp.vec3f),
            wp.from_torch(channel_multipliers),
        ],
    )


def compute_primary_edge_derivatives(
    device,
    camera: WarpCamera,
    shapes: Shapes,
    edges: Edges,
    records,
    edge_contribs: torch.Tensor,
    d_vertices,
    d_cameras,
):
    launch_kernel_from_torch(
        device,
        compute_primary_edge_derivatives_kernel,
        len(records),
        [
            camera,
            shapes,
            edges,
            records.to_warp(),
            wp.from_torch(edge_contribs.contiguous()),
            d_vertices.to_warp(),
            d_cameras.to_warp(),
        ],
    )
