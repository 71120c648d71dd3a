import logging

import torch
import warp as wp

from .camera import WarpCamera, camera_origin, clip_line, project
from .geometry import (
    Edges,
    Shapes,
    exterior_dihedral_angle,
    get_v0,
    get_v1,
    is_silhouette,
)
from .rendering_math import sample_cdf
from .warp_interop import launch_kernel_from_torch

logger = logging.getLogger(__name__)


@wp.kernel(enable_backward=False)
def primary_edge_weights_kernel(
    camera: WarpCamera,
    shapes: Shapes,
    edges: Edges,
    weights: wp.array(dtype=wp.float32),
):
    tid = wp.tid()
    weights[tid] = 0.0

    v0 = get_v0(shapes, edges, tid)
    v1 = get_v1(shapes, edges, tid)
    ok, v0_ss, v1_ss = project(camera, v0, v1)
    if not ok:
        return
    # Clip against the screen boundaries
    visible, c0, c1 = clip_line(v0_ss, v1_ss)
    if not visible:
        return
    if not is_silhouette(shapes, edges, tid, camera_origin(camera)):
        return
    weights[tid] = wp.length(c1 - c0)


@wp.kernel(enable_backward=False)
def secondary_edge_weights_kernel(
    shapes: Shapes,
    edges: Edges,
    weights: wp.array(dtype=wp.float32),
):
    tid = wp.tid()
    v0 = get_v0(shapes, edges, tid)
    v1 = get_v1(shapes, edges, tid)
    # Nearly flat edges are unlikely to become silhouettes
    weights[tid] = wp.length(v1 - v0) * exterior_dihedral_angle(shapes, edges, tid)


def primary_edge_weights(camera: WarpCamera, shapes: Shapes, edges: Edges, device):
    num_edges = edges.v0.shape[0]
    weights = torch.zeros(num_edges, dtype=torch.float32, device=device)
    launch_kernel_from_torch(
        device,
        primary_edge_weights_kernel,
        num_edges,
        [camera, shapes, edges, wp.from_torch(weights)],
    )
    return weights


def secondary_edge_weights(shapes: Shapes, edges: Edges, device):
    num_edges = edges.v0.shape[0]
    weights = torch.zeros(num_edges, dtype=torch.float32, device=device)
    launch_kernel_from_torch(
        device,
        secondary_edge_weights_kernel,
        num_edges,
        [shapes, edges, wp.from_torch(weights)],
    )
    return weights


def build_distribution(weights: torch.Tensor):
    """Normalize non-negative weights into a pmf and its exclusive prefix sum.

    A zero total gives an all-zero pmf, which samplers treat as never
    selectable.
    """
    if weights.ndim != 1:
        raise ValueError(f"Expected a 1D weight tensor, got {tuple(weights.shape)}")
    weights = weights.to(torch.float32)
    if weights.shape[0] == 0:
        return weights.clone(), weights.clone()
    total = weights.sum()
    if total > 0:
        pmf = weights / total
    else:
        logger.debug("Edge weights sum to zero, the distribution is empty")
        pmf = torch.zeros_like(weights)
    cdf = torch.cat([pmf.new_zeros(1), torch.cumsum(pmf, dim=0)[:-1]])
    return pmf.contiguous(), cdf.contiguous()


@wp.func
def sample_distribution(cdf: wp.array(dtype=wp.float32), u: float) -> int:
    return sample_cdf(cdf, cdf.shape[0], u)
