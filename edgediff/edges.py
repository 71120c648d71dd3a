import logging

import torch
import warp as wp

from .geometry import Edges, TorchShapes, radix_argsort
from .warp_interop import launch_kernel_from_torch

logger = logging.getLogger(__name__)

SHAPE_ID = 0
V0 = 1
V1 = 2
F0 = 3
F1 = 4


@wp.kernel(enable_backward=False)
def expand_triangle_edges_kernel(
    indices: wp.array(dtype=wp.vec3i),
    num_vertices: int,
    keys: wp.array(dtype=wp.int64),
    tri_ids: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    ind = indices[tid]
    for i in range(3):
        a = ind[i]
        b = ind[(i + 1) % 3]
        lo = wp.min(a, b)
        hi = wp.max(a, b)
        keys[3 * tid + i] = wp.int64(lo) * wp.int64(num_vertices) + wp.int64(hi)
        tri_ids[3 * tid + i] = tid


def _collect_shape_edges(shape_id, vertices, indices):
    device = indices.device
    num_vertices = vertices.shape[0]
    num_triangles = indices.shape[0]
    if num_triangles == 0:
        return torch.zeros((0, 5), dtype=torch.int32, device=device)
    if int(indices.min()) < 0 or int(indices.max()) >= num_vertices:
        raise ValueError(
            f"Shape {shape_id} references vertices outside [0, {num_vertices})"
        )

    keys = torch.empty(3 * num_triangles, dtype=torch.int64, device=device)
    tri_ids = torch.empty(3 * num_triangles, dtype=torch.int32, device=device)
    launch_kernel_from_torch(
        str(device),
        expand_triangle_edges_kernel,
        num_triangles,
        [
            wp.from_torch(indices.contiguous(), dtype=wp.vec3i),
            num_vertices,
            wp.from_torch(keys),
            wp.from_torch(tri_ids),
        ],
    )

    # Stable, so the faces of an edge keep their triangle order
    order = radix_argsort(keys)
    keys = keys[order]
    tri_ids = tri_ids[order]

    unique_keys, counts = torch.unique_consecutive(keys, return_counts=True)
    first = torch.cumsum(counts, dim=0) - counts

    num_non_manifold = int((counts > 2).sum())
    if num_non_manifold > 0:
        logger.debug(
            "Shape %d has %d non-manifold edges, only their first two faces are kept",
            shape_id,
            num_non_manifold,
        )

    f0 = tri_ids[first]
    f1 = torch.where(
        counts >= 2,
        tri_ids[torch.clamp(first + 1, max=keys.shape[0] - 1)],
        torch.full_like(f0, -1),
    )
    return torch.stack(
        [
            torch.full_like(f0, shape_id),
            (unique_keys // num_vertices).to(torch.int32),
            (unique_keys % num_vertices).to(torch.int32),
            f0,
            f1,
        ],
        dim=1,
    )


def collect_edges(shapes: TorchShapes) -> torch.Tensor:
    """Extract the merged edge list of all shapes.

    Returns an int32 tensor [E, 5] with columns shape_id, v0, v1, f0, f1.
    Edges are sorted by (v0, v1) within each shape, v0 <= v1, and f1 is -1
    for boundary edges.
    """
    per_shape = []
    for shape_id in range(shapes.num_shapes):
        per_shape.append(
            _collect_shape_edges(
                shape_id,
                shapes.shape_vertices(shape_id),
                shapes.shape_indices(shape_id),
            )
        )
    edges = torch.cat(per_shape, dim=0).contiguous()
    logger.info(
        "Collected %d edges (%d boundary) from %d shapes",
        edges.shape[0],
        int((edges[:, F1] == -1).sum()),
        shapes.num_shapes,
    )
    return edges


def edges_to_warp(edges: torch.Tensor) -> Edges:
    if edges.ndim != 2 or edges.shape[1] != 5 or edges.dtype != torch.int32:
        raise ValueError(f"Expected an int32 [E, 5] edge tensor, got {edges.shape}")
    out = Edges()
    # Columns must be contiguous to be viewed as Warp arrays
    columns = [edges[:, i].contiguous() for i in range(5)]
    out.shape_id = wp.from_torch(columns[SHAPE_ID])
    out.v0 = wp.from_torch(columns[V0])
    out.v1 = wp.from_torch(columns[V1])
    out.f0 = wp.from_torch(columns[F0])
    out.f1 = wp.from_torch(columns[F1])
    return out
