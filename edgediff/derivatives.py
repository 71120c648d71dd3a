"""Post-intersection weighting of secondary edge samples and the
accumulation of their derivatives.

The secondary edge integral is written with a dirac on the half plane
spanned by the shading point p and the edge (v0, v1). Changing variables
from the edge parameter to the hit point x behind the edge gives

    geometry(p, x) * line_jacobian / |(v0 - p) x (v1 - p)|

and the derivatives of the dirac argument with respect to p, v0 and v1 are
the triple-product gradients of (v0 - p) x (v1 - p) . (x - p).
"""

import torch
import warp as wp

from .geometry import Edges, Shapes, get_v0, get_v1
from .records import (
    DVertices,
    Intersections,
    SecondaryEdgeRecords,
    SurfacePoints,
)
from .rendering_math import intersect_jacobian
from .warp_interop import launch_kernel_from_torch


@wp.kernel(enable_backward=False)
def update_secondary_edge_weights_kernel(
    shapes: Shapes,
    edges: Edges,
    has_envmap: int,
    active_pixels: wp.array(dtype=wp.int32),
    shading_points: SurfacePoints,
    edge_isects: Intersections,
    edge_surface_points: SurfacePoints,
    records: SecondaryEdgeRecords,
    edge_throughputs: wp.array(dtype=wp.vec3f),
):
    idx = wp.tid()
    edge_id = records.edge_id[idx]
    if edge_id < 0:
        return

    p = shading_points.position[active_pixels[idx]]
    v0 = get_v0(shapes, edges, edge_id)
    v1 = get_v1(shapes, edges, edge_id)
    d0 = v0 - p
    d1 = v1 - p
    dirac_jacobian = wp.length(wp.cross(d0, d1))
    if dirac_jacobian <= 0.0:
        for side in range(2):
            edge_throughputs[2 * idx + side] = wp.vec3f(0.0, 0.0, 0.0)
        return
    half_plane_normal = wp.cross(d0, d1) / dirac_jacobian
    edge_pt = records.edge_pt[idx]

    for side in range(2):
        i = 2 * idx + side
        if edge_isects.shape_id[i] >= 0:
            hit_pos = edge_surface_points.position[i]
            geom_n = edge_surface_points.geom_normal[i]
            dir = hit_pos - p
            dist_sq = wp.length_sq(dir)
            # Self intersection
            if dist_sq < 1e-8:
                edge_throughputs[i] = wp.vec3f(0.0, 0.0, 0.0)
                continue
            geometry_term = wp.abs(wp.dot(geom_n, dir / wp.sqrt(dist_sq))) / dist_sq
            isect_jac = intersect_jacobian(p, edge_pt, hit_pos, geom_n, records.mwt[idx])
            plane_sin = wp.length(wp.cross(geom_n, half_plane_normal))
            line_jacobian = float(0.0)
            if plane_sin > 0.0:
                line_jacobian = wp.length(isect_jac) / plane_sin
            edge_throughputs[i] = edge_throughputs[i] * (
                geometry_term * line_jacobian / dirac_jacobian
            )
        elif has_envmap != 0:
            # edge_pt is relative to the shading point
            line_jacobian = 1.0 / wp.length_sq(edge_pt)
            edge_throughputs[i] = edge_throughputs[i] * (line_jacobian / dirac_jacobian)


@wp.kernel(enable_backward=False)
def accumulate_secondary_edge_derivatives_kernel(
    shapes: Shapes,
    edges: Edges,
    active_pixels: wp.array(dtype=wp.int32),
    shading_points: SurfacePoints,
    edge_surface_points: SurfacePoints,
    records: SecondaryEdgeRecords,
    edge_contribs: wp.array(dtype=wp.float32),
    d_vertices: DVertices,
    d_points: wp.array(dtype=wp.vec3f),
):
    idx = wp.tid()
    for side in range(2):
        i = 2 * idx + side
        d_vertices.shape_id[i] = -1
        d_vertices.vertex_id[i] = -1
        d_vertices.d_v[i] = wp.vec3f(0.0, 0.0, 0.0)

    edge_id = records.edge_id[idx]
    if edge_id < 0:
        return

    pixel_id = active_pixels[idx]
    p = shading_points.position[pixel_id]
    d0 = get_v0(shapes, edges, edge_id) - p
    d1 = get_v1(shapes, edges, edge_id) - p

    d_p = wp.vec3f(0.0, 0.0, 0.0)
    d_v0 = wp.vec3f(0.0, 0.0, 0.0)
    d_v1 = wp.vec3f(0.0, 0.0, 0.0)
    for side in range(2):
        i = 2 * idx + side
        contrib = edge_contribs[i]
        if contrib != 0.0:
            dx = edge_surface_points.position[i] - p
            # Gradients of dot(cross(d0, d1), dx), see the errata of Eq. 16
            d_p += (wp.cross(d1, d0) + wp.cross(dx, d1) + wp.cross(d0, dx)) * contrib
            d_v0 += wp.cross(d1, dx) * contrib
            d_v1 += wp.cross(dx, d0) * contrib

    wp.atomic_add(d_points, pixel_id, d_p)
    shape_id = edges.shape_id[edge_id]
    d_vertices.shape_id[2 * idx + 0] = shape_id
    d_vertices.shape_id[2 * idx + 1] = shape_id
    d_vertices.vertex_id[2 * idx + 0] = edges.v0[edge_id]
    d_vertices.vertex_id[2 * idx + 1] = edges.v1[edge_id]
    d_vertices.d_v[2 * idx + 0] = d_v0
    d_vertices.d_v[2 * idx + 1] = d_v1


def update_secondary_edge_weights(
    device,
    shapes: Shapes,
    edges: Edges,
    has_envmap: bool,
    active_pixels: torch.Tensor,
    shading_points,
    edge_isects,
    edge_surface_points,
    records,
    edge_throughputs: torch.Tensor,
):
    launch_kernel_from_torch(
        device,
        update_secondary_edge_weights_kernel,
        active_pixels.shape[0],
        [
            shapes,
            edges,
            1 if has_envmap else 0,
            wp.from_torch(active_pixels.contiguous()),
            shading_points.to_warp(),
            edge_isects.to_warp(),
            edge_surface_points.to_warp(),
            records.to_warp(),
            wp.from_torch(edge_throughputs, dtype=wp.vec3f),
        ],
    )


def accumulate_secondary_edge_derivatives(
    device,
    shapes: Shapes,
    edges: Edges,
    active_pixels: torch.Tensor,
    shading_points,
    edge_surface_points,
    records,
    edge_contribs: torch.Tensor,
    d_vertices,
    d_points: torch.Tensor,
):
    launch_kernel_from_torch(
        device,
        accumulate_secondary_edge_derivatives_kernel,
        active_pixels.shape[0],
        [
            shapes,
            edges,
            wp.from_torch(active_pixels.contiguous()),
            shading_points.to_warp(),
            edge_surface_points.to_warp(),
            records.to_warp(),
            wp.from_torch(edge_contribs.contiguous()),
            d_vertices.to_warp(),
            wp.from_torch(d_points, dtype=wp.vec3f),
        ],
    )


def reduce_vertex_derivatives(d_vertices, shapes):
    """Sum per-sample vertex derivatives into one [V_s, 3] tensor per shape."""
    d_v = d_vertices.d_v.reshape(-1, 3)
    valid = d_vertices.shape_id >= 0
    shape_ids = d_vertices.shape_id[valid].long()
    global_ids = shapes.vertex_offsets.long()[shape_ids] + d_vertices.vertex_id[valid].long()
    d_all = torch.zeros_like(shapes.vertices)
    d_all.index_add_(0, global_ids, d_v[valid])
    return [
        d_all[int(shapes.vertex_offsets[s]) : int(shapes.vertex_offsets[s + 1])]
        for s in range(shapes.num_shapes)
    ]


def reduce_camera_derivatives(d_cameras):
    return d_cameras.d_world_to_cam.sum(dim=0), d_cameras.d_fov_factor.sum()
