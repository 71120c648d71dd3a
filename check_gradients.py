import logging

import numpy as np
from PIL import Image
import matplotlib
import configargparse
import plyfile
import tqdm

import torch
import warp as wp

from configs import *
from edgediff.camera import TorchCamera, generate_camera_rays
from edgediff.derivatives import reduce_vertex_derivatives
from edgediff.edge_sampler import EdgeSampler, Scene
from edgediff.geometry import TorchShapes
from edgediff.materials import TorchMaterials
from edgediff.records import TorchIntersections


def load_ply_mesh(path):
    ply = plyfile.PlyData.read(path)
    vertex = ply["vertex"]
    vertices = np.stack([vertex["x"], vertex["y"], vertex["z"]], axis=-1)

    # Fan triangulation of polygonal faces
    triangles = []
    for face in ply["face"]["vertex_indices"]:
        for k in range(1, len(face) - 1):
            triangles.append([face[0], face[k], face[k + 1]])
    return (
        torch.tensor(vertices, dtype=torch.float32),
        torch.tensor(triangles, dtype=torch.int32).reshape(-1, 3),
    )


def unit_quad():
    vertices = torch.tensor(
        [[-0.5, -0.5, 0.0], [0.5, -0.5, 0.0], [0.5, 0.5, 0.0], [-0.5, 0.5, 0.0]],
        dtype=torch.float32,
    )
    indices = torch.tensor([[0, 1, 2], [0, 2, 3]], dtype=torch.int32)
    return vertices, indices


def intersect_triangles(org, dir, triangles, tmin=None, tmax=None, chunk_size=4096):
    """Brute force closest hit of [R] rays against [F, 3, 3] triangles.

    Returns the triangle index (-1 on a miss) and the hit distance.
    """
    org = org.to(torch.float64)
    dir = dir.to(torch.float64)
    triangles = triangles.to(torch.float64)
    num_rays = org.shape[0]
    if tmin is None:
        tmin = torch.zeros(num_rays, dtype=torch.float64, device=org.device)
    if tmax is None:
        tmax = torch.full((num_rays,), float("inf"), dtype=torch.float64, device=org.device)
    tmin = tmin.to(torch.float64)
    tmax = tmax.to(torch.float64)

    e1 = triangles[:, 1] - triangles[:, 0]
    e2 = triangles[:, 2] - triangles[:, 0]
    tri_ids = torch.full((num_rays,), -1, dtype=torch.long, device=org.device)
    hit_t = torch.full((num_rays,), float("inf"), dtype=torch.float64, device=org.device)
    for start in range(0, num_rays, chunk_size):
        o = org[start : start + chunk_size, None]
        d = dir[start : start + chunk_size, None]
        # Moeller-Trumbore
        pvec = torch.cross(d.expand(-1, e2.shape[0], -1), e2[None].expand(o.shape[0], -1, -1), dim=-1)
        det = (e1[None] * pvec).sum(-1)
        inv_det = 1.0 / torch.where(det.abs() > 1e-12, det, torch.ones_like(det))
        tvec = o - triangles[None, :, 0]
        u = (tvec * pvec).sum(-1) * inv_det
        qvec = torch.cross(tvec, e1[None].expand(o.shape[0], -1, -1), dim=-1)
        v = (d * qvec).sum(-1) * inv_det
        t = (e2[None] * qvec).sum(-1) * inv_det
        lo = tmin[start : start + chunk_size, None]
        hi = tmax[start : start + chunk_size, None]
        valid = (det.abs() > 1e-12) & (u >= 0) & (v >= 0) & (u + v <= 1) & (t > lo) & (t < hi)
        t = torch.where(valid, t, torch.full_like(t, float("inf")))
        best_t, best = t.min(dim=-1)
        hit = torch.isfinite(best_t)
        tri_ids[start : start + chunk_size] = torch.where(hit, best, torch.full_like(best, -1))
        hit_t[start : start + chunk_size] = best_t
    return tri_ids, hit_t


def coverage(camera, triangles, resolution):
    """Fraction of the screen covered by the triangles, on a regular grid."""
    s = (torch.arange(resolution, dtype=torch.float32) + 0.5) / resolution
    y, x = torch.meshgrid(s, s, indexing="ij")
    screen_pos = torch.stack([x.reshape(-1), y.reshape(-1)], dim=-1)
    org, dir = generate_camera_rays(camera, screen_pos)
    tri_ids, _ = intersect_triangles(org, dir, triangles)
    return (tri_ids >= 0).double().mean().item()


def check_gradients(sampling_args, check_args):
    wp.init()
    torch.random.manual_seed(check_args.seed)
    np.random.seed(check_args.seed)

    if check_args.mesh is not None:
        vertices, indices = load_ply_mesh(check_args.mesh)
    else:
        vertices, indices = unit_quad()
    translation = torch.tensor(check_args.translation, dtype=torch.float32)
    vertices = vertices + translation

    position = torch.tensor(check_args.camera_position, dtype=torch.float32)
    camera = TorchCamera(
        position=position,
        look_at=position + torch.tensor([0.0, 0.0, 1.0]),
        up=torch.tensor([0.0, 1.0, 0.0]),
        fov=check_args.fov,
        width=check_args.width,
        height=check_args.height,
        fisheye=check_args.fisheye,
    )
    scene = Scene(
        shapes=TorchShapes.from_meshes([(vertices, indices)]),
        materials=TorchMaterials.from_lists([[0.5, 0.5, 0.5]], [[0.0, 0.0, 0.0]], [0.5]),
        camera=camera,
        use_gpu=sampling_args.use_gpu,
    )
    device = scene.device
    sampler = EdgeSampler(sampling_args, scene)

    # Loss is the covered fraction of the screen, the mesh has unit radiance
    num_pixels = check_args.width * check_args.height
    d_rendered_image = torch.zeros((num_pixels, 3), dtype=torch.float32, device=device)
    d_rendered_image[:, 0] = 1.0 / num_pixels
    triangles = vertices[indices.long()].to(device)

    d_translation = torch.zeros(3, dtype=torch.float64)
    contribution_image = torch.zeros(num_pixels, dtype=torch.float64)
    num_batches = max(check_args.num_samples // check_args.batch_size, 1)
    for _ in tqdm.trange(num_batches, desc="Sampling edges"):
        samples = torch.rand((check_args.batch_size, 2), device=device)
        primary = sampler.sample_primary_edges(samples, d_rendered_image)
        tri_ids, _ = intersect_triangles(
            primary.rays.org, primary.rays.dir, triangles, primary.rays.tmin, primary.rays.tmax
        )
        isects = TorchIntersections(
            shape_id=torch.where(tri_ids >= 0, 0, -1).to(torch.int32),
            tri_id=tri_ids.to(torch.int32),
        )
        sampler.update_primary_edge_weights(primary, isects)
        edge_contribs = primary.throughputs.sum(dim=-1) * (tri_ids >= 0).float()
        d_vertices, _ = sampler.accumulate_edge_derivatives(primary.records, edge_contribs)
        (d_v,) = reduce_vertex_derivatives(d_vertices, sampler.shapes)
        d_translation += d_v.sum(dim=0).double().cpu()

        valid = primary.records.edge_id >= 0
        edge_pt = primary.records.edge_pt[valid].cpu()
        px = (edge_pt[:, 0] * check_args.width).long().clamp(0, check_args.width - 1)
        py = (edge_pt[:, 1] * check_args.height).long().clamp(0, check_args.height - 1)
        pair = edge_contribs.reshape(-1, 2).sum(dim=-1)[valid].double().cpu()
        contribution_image.index_add_(0, py * check_args.width + px, pair)

    num_total = num_batches * check_args.batch_size
    d_translation *= num_pixels / num_total

    fd = np.zeros(3)
    for k in tqdm.trange(3, desc="Finite differences"):
        offset = torch.zeros(3)
        offset[k] = check_args.fd_step
        plus = coverage(camera, (vertices + offset)[indices.long()], check_args.fd_resolution)
        minus = coverage(camera, (vertices - offset)[indices.long()], check_args.fd_resolution)
        fd[k] = (plus - minus) / (2 * check_args.fd_step)

    print(f"Edge sampled gradient: {d_translation.numpy()}")
    print(f"Finite differences:    {fd}")
    error = np.abs(d_translation.numpy() - fd).max() / max(np.abs(fd).max(), 1e-12)
    print(f"Relative error:        {error:.4f}")

    if check_args.output_image is not None:
        image = contribution_image.reshape(check_args.height, check_args.width).numpy()
        scale = max(np.abs(image).max(), 1e-12)
        colormap = matplotlib.colormaps[check_args.colormap]
        rgb = (colormap(0.5 + 0.5 * image / scale)[:, :, :3] * 255).astype(np.uint8)
        Image.fromarray(rgb).save(check_args.output_image)

    return d_translation.numpy(), fd


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = configargparse.ArgParser()

    get_sampling_params = add_group(parser, EdgeSamplingParams)
    get_check_params = add_group(parser, GradientCheckParams)

    # Add argument to specify a custom config file
    parser.add_argument(
        "-c", "--config", is_config_file=True, help="Path to config file"
    )

    # Parse arguments
    args = parser.parse_args()

    check_gradients(get_sampling_params(args), get_check_params(args))
