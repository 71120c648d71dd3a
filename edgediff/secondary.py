import torch
import warp as wp

from .edge_tree import EdgeTreeNodes, sample_edge_tree
from .geometry import Edges, Shapes, get_v0, get_v1, is_silhouette
from .ltc import (
    LTCTables,
    clip_to_horizon,
    get_ltc_matrix,
    invert_line_cdf,
    line_parameters,
    line_weight,
)
from .materials import (
    Materials,
    bsdf,
    diffuse_luminance,
    get_roughness,
    specular_luminance,
)
from .records import (
    Intersections,
    RayDifferentials,
    Rays,
    SecondaryEdgeRecords,
    SurfacePoints,
)
from .rendering_math import (
    coordinate_system,
    frame_to_matrix,
    modulo,
    sample_cdf,
)
from .warp_interop import launch_kernel_from_torch

RESAMPLE_COUNT = 64
resample_weights = wp.types.vector(length=RESAMPLE_COUNT, dtype=wp.float32)
resample_ids = wp.types.vector(length=RESAMPLE_COUNT, dtype=wp.int32)

# Wide, constant direction differential for diffuse bounces
DIFFUSE_DIR_DIFFERENTIAL = wp.constant(0.03)


@wp.func
def isotropic_frame(n: wp.vec3f, wi: wp.vec3f) -> wp.mat33f:
    # x axis along the projection of wi onto the tangent plane
    t = wi - n * wp.dot(wi, n)
    t_len = wp.length(t)
    x = wp.vec3f(0.0, 0.0, 0.0)
    y = wp.vec3f(0.0, 0.0, 0.0)
    if t_len > 1e-6:
        x = t / t_len
        y = wp.cross(n, x)
    else:
        bx, by = coordinate_system(n)
        x = bx
        y = by
    return frame_to_matrix(x, y, n)


@wp.func
def shares_triangle(edges: Edges, edge_id: int, shape_id: int, tri_id: int) -> bool:
    return edges.shape_id[edge_id] == shape_id and (
        edges.f0[edge_id] == tri_id or edges.f1[edge_id] == tri_id
    )


@wp.func
def candidate_weight(
    shapes: Shapes,
    edges: Edges,
    edges_pmf: wp.array(dtype=wp.float32),
    edge_id: int,
    isect_shape_id: int,
    isect_tri_id: int,
    p: wp.vec3f,
    m_inv: wp.mat33f,
) -> float:
    pmf = edges_pmf[edge_id]
    if pmf <= 0.0:
        return 0.0
    if shares_triangle(edges, edge_id, isect_shape_id, isect_tri_id):
        return 0.0
    if not is_silhouette(shapes, edges, edge_id, p):
        return 0.0
    v0 = get_v0(shapes, edges, edge_id)
    v1 = get_v1(shapes, edges, edge_id)
    if wp.length_sq(v1 - v0) <= 1e-10:
        return 0.0
    ok, v0o, v1o = clip_to_horizon(m_inv * (v0 - p), m_inv * (v1 - p))
    if not ok:
        return 0.0
    return line_weight(v0o, v1o) / pmf


@wp.func
def resample_edge(
    shapes: Shapes,
    edges: Edges,
    edges_pmf: wp.array(dtype=wp.float32),
    edges_cdf: wp.array(dtype=wp.float32),
    isect_shape_id: int,
    isect_tri_id: int,
    p: wp.vec3f,
    m_inv: wp.mat33f,
    edge_sel: float,
    resample_sel: float,
):
    """Pick one of RESAMPLE_COUNT stratified candidates proportionally to
    their LTC line integral. Returns the edge id and its sample weight."""
    num_edges = edges_cdf.shape[0]
    ids = resample_ids()
    weights = resample_weights()
    total = float(0.0)
    for i in range(RESAMPLE_COUNT):
        # One random number stratified over all candidates
        u = modulo(edge_sel + float(i) / float(RESAMPLE_COUNT), 1.0)
        edge_id = sample_cdf(edges_cdf, num_edges, u)
        ids[i] = edge_id
        w = wp.max(
            candidate_weight(
                shapes, edges, edges_pmf, edge_id, isect_shape_id, isect_tri_id, p, m_inv
            ),
            0.0,
        )
        weights[i] = w
        total += w
    if total <= 0.0:
        return int(-1), float(0.0)

    target = resample_sel * total
    chosen = int(-1)
    running = float(0.0)
    for i in range(RESAMPLE_COUNT):
        running += weights[i]
        if chosen == -1 and target <= running:
            chosen = i
    if chosen == -1 or weights[chosen] <= 0.0:
        return int(-1), float(0.0)
    edge_id = ids[chosen]
    return edge_id, (total / float(RESAMPLE_COUNT)) / (weights[chosen] * edges_pmf[edge_id])


@wp.func
def clear_secondary_outputs(
    idx: int,
    min_rough: float,
    records: SecondaryEdgeRecords,
    rays: Rays,
    bsdf_differentials: RayDifferentials,
    new_throughputs: wp.array(dtype=wp.vec3f),
    edge_min_roughness: wp.array(dtype=wp.float32),
):
    zero = wp.vec3f(0.0, 0.0, 0.0)
    records.edge_id[idx] = -1
    records.edge_pt[idx] = zero
    records.mwt[idx] = zero
    for side in range(2):
        i = 2 * idx + side
        rays.org[i] = zero
        rays.dir[i] = zero
        rays.tmin[i] = 0.0
        rays.tmax[i] = 0.0
        bsdf_differentials.org_dx[i] = zero
        bsdf_differentials.org_dy[i] = zero
        bsdf_differentials.dir_dx[i] = zero
        bsdf_differentials.dir_dy[i] = zero
        new_throughputs[i] = zero
        edge_min_roughness[i] = min_rough


@wp.kernel(enable_backward=False)
def sample_secondary_edges_kernel(
    shapes: Shapes,
    materials: Materials,
    edges: Edges,
    cam_org: wp.vec3f,
    use_edge_tree: int,
    edges_pmf: wp.array(dtype=wp.float32),
    edges_cdf: wp.array(dtype=wp.float32),
    nodes: EdgeTreeNodes,
    ltc: LTCTables,
    diffuse_roughness_threshold: float,
    ray_offset: float,
    active_pixels: wp.array(dtype=wp.int32),
    samples: wp.array(dtype=wp.vec4f),
    incoming_rays: Rays,
    incoming_ray_differentials: RayDifferentials,
    shading_isects: Intersections,
    shading_points: SurfacePoints,
    throughputs: wp.array(dtype=wp.vec3f),
    min_roughness: wp.array(dtype=wp.float32),
    d_rendered_image: wp.array2d(dtype=wp.float32),
    radiance_dimension: int,
    records: SecondaryEdgeRecords,
    rays: Rays,
    bsdf_differentials: RayDifferentials,
    new_throughputs: wp.array(dtype=wp.vec3f),
    edge_min_roughness: wp.array(dtype=wp.float32),
):
    idx = wp.tid()
    pixel_id = active_pixels[idx]
    min_rough = min_roughness[pixel_id]
    clear_secondary_outputs(
        idx, min_rough, records, rays, bsdf_differentials, new_throughputs, edge_min_roughness
    )

    # Paths that already went through a diffuse vertex contribute mostly noise
    if min_rough > diffuse_roughness_threshold:
        return
    isect_shape_id = shading_isects.shape_id[pixel_id]
    isect_tri_id = shading_isects.tri_id[pixel_id]
    if isect_shape_id < 0:
        return

    # bsdf_component, edge_sel, resample_sel, t
    sample = samples[idx]
    wi = -incoming_rays.dir[pixel_id]
    p = shading_points.position[pixel_id]
    n = shading_points.shading_normal[pixel_id]
    geom_n = shading_points.geom_normal[pixel_id]
    material_id = shapes.material_ids[isect_shape_id]

    # Choose the lobe to importance sample
    diffuse_weight = diffuse_luminance(materials, material_id)
    specular_weight = specular_luminance(materials, material_id)
    weight_sum = diffuse_weight + specular_weight
    if weight_sum <= 0.0:
        return
    diffuse_pmf = diffuse_weight / weight_sum
    is_diffuse = sample[0] <= diffuse_pmf

    frame = isotropic_frame(n, wi)
    m_inv = frame
    m_pmf = diffuse_pmf
    if not is_diffuse:
        roughness = wp.max(get_roughness(materials, material_id), min_rough)
        m_inv = wp.inverse(get_ltc_matrix(ltc, roughness, wp.dot(wi, n))) * frame
        m_pmf = 1.0 - diffuse_pmf
    m = wp.inverse(m_inv)

    edge_id = int(-1)
    edge_sample_weight = float(0.0)
    if use_edge_tree == 0:
        resampled_id, resampled_weight = resample_edge(
            shapes, edges, edges_pmf, edges_cdf, isect_shape_id, isect_tri_id,
            p, m_inv, sample[1], sample[2],
        )
        edge_id = resampled_id
        edge_sample_weight = resampled_weight
    else:
        tree_edge_id, tree_pmf = sample_edge_tree(
            nodes, shapes, edges, p, n, m_inv, cam_org, ltc, sample[1]
        )
        edge_id = tree_edge_id
        if tree_pmf > 0.0:
            edge_sample_weight = 1.0 / tree_pmf
    if edge_id < 0:
        return
    if not is_silhouette(shapes, edges, edge_id, p):
        return

    v0 = get_v0(shapes, edges, edge_id)
    v1 = get_v1(shapes, edges, edge_id)
    # Local LTC space, clipped to the tangent plane
    ok, v0o, v1o = clip_to_horizon(m_inv * (v0 - p), m_inv * (v1 - p))
    if not ok:
        return
    vo, d, wt, l0, l1 = line_parameters(v0o, v1o)
    if d < 1e-8 or l1 - l0 <= 0.0:
        return
    l, line_pdf_value = invert_line_cdf(sample[3], l0, l1, d, vo[2], wt[2])
    if line_pdf_value <= 0.0:
        return

    sample_p = m * (vo + l * wt)
    sample_dist = wp.length(sample_p)
    # The shading point and the edge form a half plane splitting the directions
    half_plane_normal = wp.normalize(wp.cross(v0 - p, v1 - p))
    offset = ray_offset / sample_dist
    sample_dir = sample_p / sample_dist
    upper_dir = wp.normalize(sample_dir + offset * half_plane_normal)
    lower_dir = wp.normalize(sample_dir - offset * half_plane_normal)

    eval_bsdf = bsdf(materials, material_id, n, geom_n, wi, sample_dir, min_rough)
    if eval_bsdf[0] + eval_bsdf[1] + eval_bsdf[2] < 1e-6:
        return

    rd = radiance_dimension
    d_color = wp.vec3f(
        d_rendered_image[pixel_id, rd + 0],
        d_rendered_image[pixel_id, rd + 1],
        d_rendered_image[pixel_id, rd + 2],
    )
    records.edge_id[idx] = edge_id
    records.edge_pt[idx] = sample_p
    records.mwt[idx] = m * wt
    rays.org[2 * idx + 0] = p
    rays.dir[2 * idx + 0] = upper_dir
    rays.org[2 * idx + 1] = p
    rays.dir[2 * idx + 1] = lower_dir
    for side in range(2):
        i = 2 * idx + side
        rays.tmin[i] = 1e-3 * sample_dist
        rays.tmax[i] = wp.inf

    org_dx = incoming_ray_differentials.org_dx[pixel_id]
    org_dy = incoming_ray_differentials.org_dy[pixel_id]
    dir_dx = wp.vec3f(DIFFUSE_DIR_DIFFERENTIAL, DIFFUSE_DIR_DIFFERENTIAL, DIFFUSE_DIR_DIFFERENTIAL)
    dir_dy = dir_dx
    if not is_diffuse:
        # Igehy 1999 with the half vector standing in for the micro normal
        in_dir_dx = incoming_ray_differentials.dir_dx[pixel_id]
        in_dir_dy = incoming_ray_differentials.dir_dy[pixel_id]
        dn_dx = shading_points.dn_dx[pixel_id]
        dn_dy = shading_points.dn_dy[pixel_id]
        h = wp.normalize(wi + sample_dir)
        h_local_z = wp.dot(h, n)
        dh_dx = dn_dx * h_local_z
        dh_dy = dn_dy * h_local_z
        ddotn_dx = wp.dot(in_dir_dx, h) - wp.dot(wi, dh_dx)
        ddotn_dy = wp.dot(in_dir_dy, h) - wp.dot(wi, dh_dy)
        dir_dx = in_dir_dx - 2.0 * (-wp.dot(wi, h) * dn_dx + ddotn_dx * h)
        dir_dy = in_dir_dy - 2.0 * (-wp.dot(wi, h) * dn_dy + ddotn_dy * h)
    for side in range(2):
        i = 2 * idx + side
        bsdf_differentials.org_dx[i] = org_dx
        bsdf_differentials.org_dy[i] = org_dy
        bsdf_differentials.dir_dx[i] = dir_dx
        bsdf_differentials.dir_dy[i] = dir_dy

    # The Jacobian between the edge parameter and the hit point is applied
    # once the rays are traced
    edge_weight = edge_sample_weight / (m_pmf * line_pdf_value)
    assert wp.isfinite(edge_weight)
    if not wp.isfinite(edge_weight):
        return
    nt = wp.cw_mul(wp.cw_mul(throughputs[pixel_id], eval_bsdf), d_color) * edge_weight
    new_throughputs[2 * idx + 0] = nt
    new_throughputs[2 * idx + 1] = -nt


def sample_secondary_edges(
    device,
    shapes: Shapes,
    materials: Materials,
    edges: Edges,
    cam_org: wp.vec3f,
    use_edge_tree: bool,
    edges_pmf: torch.Tensor,
    edges_cdf: torch.Tensor,
    nodes: EdgeTreeNodes,
    ltc: LTCTables,
    diffuse_roughness_threshold: float,
    ray_offset: float,
    active_pixels: torch.Tensor,
    samples: torch.Tensor,
    incoming_rays,
    incoming_ray_differentials,
    shading_isects,
    shading_points,
    throughputs: torch.Tensor,
    min_roughness: torch.Tensor,
    d_rendered_image: torch.Tensor,
    radiance_dimension: int,
    records,
    rays,
    bsdf_differentials,
    new_throughputs: torch.Tensor,
    edge_min_roughness: torch.Tensor,
):
    launch_kernel_from_torch(
        device,
        sample_secondary_edges_kernel,
        active_pixels.shape[0],
        [
            shapes,
            materials,
            edges,
            cam_org,
            1 if use_edge_tree else 0,
            wp.from_torch(edges_pmf),
            wp.from_torch(edges_cdf),
            nodes,
            ltc,
            diffuse_roughness_threshold,
            ray_offset,
            wp.from_torch(active_pixels.contiguous()),
            wp.from_torch(samples.contiguous(), dtype=wp.vec4f),
            incoming_rays.to_warp(),
            incoming_ray_differentials.to_warp(),
            shading_isects.to_warp(),
            shading_points.to_warp(),
            wp.from_torch(throughputs.contiguous(), dtype=wp.vec3f),
            wp.from_torch(min_roughness.contiguous()),
            wp.from_torch(d_rendered_image.contiguous()),
            radiance_dimension,
            records.to_warp(),
            rays.to_warp(),
            bsdf_differentials.to_warp(),
            wp.from_torch(new_throughputs, dtype=wp.vec3f),
            wp.from_torch(edge_min_roughness),
        ],
    )
