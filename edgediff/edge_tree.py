"""Hierarchical importance sampling of secondary edges.

Edges are split into two trees. The first holds the edges that are
silhouettes when seen from the camera, the second all others. Nodes of the
second tree also bound the feet of the perpendiculars dropped from the
camera origin onto the face planes of their edges. A shading point p can
only see such an edge as a silhouette if one of its face planes separates p
from the camera, i.e. if one of those feet lies in the sphere with diameter
[p, camera origin].
"""

import logging

import numpy as np
import torch
import warp as wp

from .geometry import (
    Edges,
    Shapes,
    exterior_dihedral_angle,
    face_normal,
    get_v0,
    get_v1,
    is_silhouette,
    morton_order,
)
from .ltc import LTCTables, ltc_sphere_integral
from .rendering_math import aabb_corner, bounding_sphere, sphere_aabb_intersect
from .warp_interop import launch_kernel_from_torch

logger = logging.getLogger(__name__)


@wp.struct
class EdgeTreeNodes:
    p_min: wp.array(dtype=wp.vec3f)
    p_max: wp.array(dtype=wp.vec3f)
    d_min: wp.array(dtype=wp.vec3f)
    d_max: wp.array(dtype=wp.vec3f)
    weighted_total_length: wp.array(dtype=wp.float32)
    children: wp.array(dtype=wp.vec2i)
    edge_id: wp.array(dtype=wp.int32)
    cs_root: int
    ncs_root: int


@wp.kernel(enable_backward=False)
def camera_silhouette_kernel(
    shapes: Shapes,
    edges: Edges,
    cam_org: wp.vec3f,
    flags: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    flags[tid] = 0
    if is_silhouette(shapes, edges, tid, cam_org):
        flags[tid] = 1


@wp.kernel(enable_backward=False)
def edge_leaf_kernel(
    shapes: Shapes,
    edges: Edges,
    edge_ids: wp.array(dtype=wp.int32),
    cam_org: wp.vec3f,
    p_min: wp.array(dtype=wp.vec3f),
    p_max: wp.array(dtype=wp.vec3f),
    d_min: wp.array(dtype=wp.vec3f),
    d_max: wp.array(dtype=wp.vec3f),
    weighted_total_length: wp.array(dtype=wp.float32),
    midpoints: wp.array(dtype=wp.vec3f),
):
    tid = wp.tid()
    edge_id = edge_ids[tid]
    v0 = get_v0(shapes, edges, edge_id)
    v1 = get_v1(shapes, edges, edge_id)
    p_min[tid] = wp.min(v0, v1)
    p_max[tid] = wp.max(v0, v1)
    midpoints[tid] = 0.5 * (v0 + v1)
    weighted_total_length[tid] = wp.length(v1 - v0) * exterior_dihedral_angle(
        shapes, edges, edge_id
    )

    # Closest points of the face planes to the camera origin
    shape_id = edges.shape_id[edge_id]
    n0 = face_normal(shapes, shape_id, edges.f0[edge_id])
    n1 = n0
    if edges.f1[edge_id] != -1:
        n1 = face_normal(shapes, shape_id, edges.f1[edge_id])
    q0 = cam_org + n0 * wp.dot(n0, v0 - cam_org)
    q1 = cam_org + n1 * wp.dot(n1, v0 - cam_org)
    d_min[tid] = wp.min(q0, q1)
    d_max[tid] = wp.max(q0, q1)


@wp.func
def node_importance(
    nodes: EdgeTreeNodes,
    shapes: Shapes,
    edges: Edges,
    node: int,
    p: wp.vec3f,
    n: wp.vec3f,
    m_inv: wp.mat33f,
    cam_org: wp.vec3f,
    ltc: LTCTables,
) -> float:
    wtl = nodes.weighted_total_length[node]
    if wtl <= 0.0:
        return 0.0

    p_min = nodes.p_min[node]
    p_max = nodes.p_max[node]
    edge_id = nodes.edge_id[node]
    above = int(0)
    if edge_id >= 0:
        # Leaves test the segment itself, its box may poke above the plane
        if wp.dot(get_v0(shapes, edges, edge_id) - p, n) > 0.0:
            above = 1
        if wp.dot(get_v1(shapes, edges, edge_id) - p, n) > 0.0:
            above = 1
    else:
        for i in range(8):
            if wp.dot(aabb_corner(p_min, p_max, i) - p, n) > 0.0:
                above = 1
    if above == 0:
        return 0.0

    if nodes.ncs_root >= 0 and node >= nodes.ncs_root:
        view_center = 0.5 * (p + cam_org)
        view_radius = 0.5 * wp.length(p - cam_org)
        if not sphere_aabb_intersect(
            view_center, view_radius, nodes.d_min[node], nodes.d_max[node]
        ):
            return 0.0

    center, radius = bounding_sphere(p_min, p_max)
    dist_sq = wp.length_sq(center - p)
    brdf_term = ltc_sphere_integral(ltc, center - p, radius, m_inv)
    return brdf_term * wtl / wp.max(dist_sq, 1e-6)


@wp.func
def sample_edge_tree(
    nodes: EdgeTreeNodes,
    shapes: Shapes,
    edges: Edges,
    p: wp.vec3f,
    n: wp.vec3f,
    m_inv: wp.mat33f,
    cam_org: wp.vec3f,
    ltc: LTCTables,
    u: float,
):
    """Descend from one of the two roots, choosing children proportionally to
    their importance. Returns the edge id and the probability of the path,
    or (-1, 0) when every candidate has zero importance."""
    imp_cs = float(0.0)
    imp_ncs = float(0.0)
    if nodes.cs_root >= 0:
        imp_cs = node_importance(nodes, shapes, edges, nodes.cs_root, p, n, m_inv, cam_org, ltc)
    if nodes.ncs_root >= 0:
        imp_ncs = node_importance(nodes, shapes, edges, nodes.ncs_root, p, n, m_inv, cam_org, ltc)
    if imp_cs <= 0.0 and imp_ncs <= 0.0:
        return int(-1), float(0.0)

    sample = float(u)
    node = int(0)
    pmf = float(0.0)
    prob_cs = imp_cs / (imp_cs + imp_ncs)
    if sample < prob_cs:
        node = nodes.cs_root
        pmf = prob_cs
        sample = sample / prob_cs
    else:
        node = nodes.ncs_root
        pmf = 1.0 - prob_cs
        sample = (sample - prob_cs) / (1.0 - prob_cs)

    while nodes.edge_id[node] < 0:
        sample = wp.clamp(sample, 0.0, 0.99999994)
        children = nodes.children[node]
        imp0 = node_importance(nodes, shapes, edges, children[0], p, n, m_inv, cam_org, ltc)
        imp1 = node_importance(nodes, shapes, edges, children[1], p, n, m_inv, cam_org, ltc)
        if imp0 <= 0.0 and imp1 <= 0.0:
            return int(-1), float(0.0)
        prob0 = imp0 / (imp0 + imp1)
        if sample < prob0:
            node = children[0]
            pmf = pmf * prob0
            sample = sample / prob0
        else:
            node = children[1]
            pmf = pmf * (1.0 - prob0)
            sample = (sample - prob0) / (1.0 - prob0)

    if not (pmf > 0.0):
        return int(-1), float(0.0)
    return nodes.edge_id[node], pmf


@wp.kernel(enable_backward=False)
def node_importances_kernel(
    nodes: EdgeTreeNodes,
    shapes: Shapes,
    edges: Edges,
    p: wp.vec3f,
    n: wp.vec3f,
    m_inv: wp.mat33f,
    cam_org: wp.vec3f,
    ltc: LTCTables,
    importances: wp.array(dtype=wp.float32),
):
    tid = wp.tid()
    importances[tid] = node_importance(nodes, shapes, edges, tid, p, n, m_inv, cam_org, ltc)


@wp.kernel(enable_backward=False)
def sample_edge_tree_kernel(
    nodes: EdgeTreeNodes,
    shapes: Shapes,
    edges: Edges,
    p: wp.array(dtype=wp.vec3f),
    n: wp.array(dtype=wp.vec3f),
    m_inv: wp.array(dtype=wp.mat33f),
    cam_org: wp.vec3f,
    ltc: LTCTables,
    u: wp.array(dtype=wp.float32),
    edge_ids: wp.array(dtype=wp.int32),
    pmfs: wp.array(dtype=wp.float32),
):
    tid = wp.tid()
    edge_id, pmf = sample_edge_tree(
        nodes, shapes, edges, p[tid], n[tid], m_inv[tid], cam_org, ltc, u[tid]
    )
    edge_ids[tid] = edge_id
    pmfs[tid] = pmf


def _balanced_topology(num_leaves: int, first_node: int):
    """Median split of num_leaves ordered leaves into 2 * num_leaves - 1
    nodes. Returns children (arena indices), the leaf slot of every node
    (-1 for internal nodes) and the node depths."""
    num_nodes = 2 * num_leaves - 1
    children = np.full((num_nodes, 2), -1, dtype=np.int32)
    leaf = np.full(num_nodes, -1, dtype=np.int64)
    depth = np.zeros(num_nodes, dtype=np.int32)

    next_node = 1
    stack = [(0, 0, num_leaves, 0)]
    while stack:
        node, lo, hi, d = stack.pop()
        depth[node] = d
        if hi - lo == 1:
            leaf[node] = lo
            continue
        mid = (lo + hi) // 2
        c0, c1 = next_node, next_node + 1
        next_node += 2
        children[node] = (first_node + c0, first_node + c1)
        stack.append((c0, lo, mid, d + 1))
        stack.append((c1, mid, hi, d + 1))
    return children, leaf, depth


def _reduce_bounds(children, leaf, depth, leaf_data, first_node):
    num_nodes = children.shape[0]
    p_min = np.zeros((num_nodes, 3), dtype=np.float32)
    p_max = np.zeros((num_nodes, 3), dtype=np.float32)
    d_min = np.zeros((num_nodes, 3), dtype=np.float32)
    d_max = np.zeros((num_nodes, 3), dtype=np.float32)
    wtl = np.zeros(num_nodes, dtype=np.float32)
    edge_id = np.full(num_nodes, -1, dtype=np.int32)

    is_leaf = leaf >= 0
    slots = leaf[is_leaf]
    p_min[is_leaf] = leaf_data["p_min"][slots]
    p_max[is_leaf] = leaf_data["p_max"][slots]
    d_min[is_leaf] = leaf_data["d_min"][slots]
    d_max[is_leaf] = leaf_data["d_max"][slots]
    wtl[is_leaf] = leaf_data["weighted_total_length"][slots]
    edge_id[is_leaf] = leaf_data["edge_id"][slots]

    local_children = children - first_node
    for d in range(int(depth.max()), -1, -1):
        internal = np.nonzero((depth == d) & ~is_leaf)[0]
        if internal.shape[0] == 0:
            continue
        c0 = local_children[internal, 0]
        c1 = local_children[internal, 1]
        p_min[internal] = np.minimum(p_min[c0], p_min[c1])
        p_max[internal] = np.maximum(p_max[c0], p_max[c1])
        d_min[internal] = np.minimum(d_min[c0], d_min[c1])
        d_max[internal] = np.maximum(d_max[c0], d_max[c1])
        wtl[internal] = wtl[c0] + wtl[c1]

    return {
        "p_min": p_min,
        "p_max": p_max,
        "d_min": d_min,
        "d_max": d_max,
        "weighted_total_length": wtl,
        "children": children,
        "edge_id": edge_id,
    }


_NODE_FIELDS = ("p_min", "p_max", "d_min", "d_max", "weighted_total_length", "children", "edge_id")


def _empty_arena():
    # Keep the arrays non-empty so the struct stays valid
    return {
        "p_min": np.zeros((1, 3), dtype=np.float32),
        "p_max": np.zeros((1, 3), dtype=np.float32),
        "d_min": np.zeros((1, 3), dtype=np.float32),
        "d_max": np.zeros((1, 3), dtype=np.float32),
        "weighted_total_length": np.zeros(1, dtype=np.float32),
        "children": np.full((1, 2), -1, dtype=np.int32),
        "edge_id": np.full(1, -1, dtype=np.int32),
    }


class EdgeTree:
    def __init__(self, device):
        self.device = device

    @classmethod
    def empty(cls, device):
        """A tree without edges, sampling from it always fails."""
        tree = cls(device)
        tree.tensors = {
            key: torch.from_numpy(value).to(device) for key, value in _empty_arena().items()
        }
        tree.cs_root = -1
        tree.ncs_root = -1
        tree.num_nodes = 0
        tree.max_depth = 0
        return tree

    def _leaf_data(self, shapes, edges, edge_ids, cam_org):
        num_leaves = edge_ids.shape[0]
        tensors = {
            "p_min": torch.zeros((num_leaves, 3), dtype=torch.float32, device=self.device),
            "p_max": torch.zeros((num_leaves, 3), dtype=torch.float32, device=self.device),
            "d_min": torch.zeros((num_leaves, 3), dtype=torch.float32, device=self.device),
            "d_max": torch.zeros((num_leaves, 3), dtype=torch.float32, device=self.device),
            "weighted_total_length": torch.zeros(
                num_leaves, dtype=torch.float32, device=self.device
            ),
        }
        midpoints = torch.zeros((num_leaves, 3), dtype=torch.float32, device=self.device)
        launch_kernel_from_torch(
            self.device,
            edge_leaf_kernel,
            num_leaves,
            [
                shapes,
                edges,
                wp.from_torch(edge_ids),
                cam_org,
                wp.from_torch(tensors["p_min"], dtype=wp.vec3f),
                wp.from_torch(tensors["p_max"], dtype=wp.vec3f),
                wp.from_torch(tensors["d_min"], dtype=wp.vec3f),
                wp.from_torch(tensors["d_max"], dtype=wp.vec3f),
                wp.from_torch(tensors["weighted_total_length"]),
                wp.from_torch(midpoints, dtype=wp.vec3f),
            ],
        )

        # Spatially coherent leaf order
        order = morton_order(midpoints)
        leaf_data = {k: v[order].cpu().numpy() for k, v in tensors.items()}
        leaf_data["edge_id"] = edge_ids[order].cpu().numpy()
        return leaf_data

    def _build_partition(self, shapes, edges, edge_ids, cam_org, first_node):
        leaf_data = self._leaf_data(shapes, edges, edge_ids, cam_org)
        children, leaf, depth = _balanced_topology(edge_ids.shape[0], first_node)
        return _reduce_bounds(children, leaf, depth, leaf_data, first_node), int(depth.max())

    def build(self, shapes: Shapes, edges: Edges, cam_org: wp.vec3f):
        num_edges = edges.v0.shape[0]
        flags = torch.zeros(num_edges, dtype=torch.int32, device=self.device)
        launch_kernel_from_torch(
            self.device,
            camera_silhouette_kernel,
            num_edges,
            [shapes, edges, cam_org, wp.from_torch(flags)],
        )
        cs_ids = torch.nonzero(flags).reshape(-1).to(torch.int32)
        ncs_ids = torch.nonzero(flags == 0).reshape(-1).to(torch.int32)

        partitions = []
        cs_root = -1
        ncs_root = -1
        max_depth = 0
        num_nodes = 0
        if cs_ids.shape[0] > 0:
            cs_root = num_nodes
            arena, depth = self._build_partition(shapes, edges, cs_ids, cam_org, num_nodes)
            partitions.append(arena)
            num_nodes += arena["edge_id"].shape[0]
            max_depth = max(max_depth, depth)
        if ncs_ids.shape[0] > 0:
            ncs_root = num_nodes
            arena, depth = self._build_partition(shapes, edges, ncs_ids, cam_org, num_nodes)
            partitions.append(arena)
            num_nodes += arena["edge_id"].shape[0]
            max_depth = max(max_depth, depth)

        if num_nodes == 0:
            partitions.append(_empty_arena())

        self.tensors = {
            key: torch.from_numpy(
                np.concatenate([arena[key] for arena in partitions], axis=0)
            ).to(self.device)
            for key in _NODE_FIELDS
        }
        self.cs_root = cs_root
        self.ncs_root = ncs_root
        self.num_nodes = num_nodes
        self.max_depth = max_depth

        logger.info(
            "Built edge tree: %d camera silhouette edges, %d other edges, "
            "%d nodes, depth %d",
            cs_ids.shape[0],
            ncs_ids.shape[0],
            num_nodes,
            max_depth,
        )
        return self

    def to_warp(self) -> EdgeTreeNodes:
        nodes = EdgeTreeNodes()
        for key in ("p_min", "p_max", "d_min", "d_max"):
            setattr(nodes, key, wp.from_torch(self.tensors[key], dtype=wp.vec3f))
        nodes.weighted_total_length = wp.from_torch(self.tensors["weighted_total_length"])
        nodes.children = wp.from_torch(self.tensors["children"], dtype=wp.vec2i)
        nodes.edge_id = wp.from_torch(self.tensors["edge_id"])
        nodes.cs_root = self.cs_root
        nodes.ncs_root = self.ncs_root
        return nodes

    def node_importances(self, shapes, edges, p, n, m_inv, cam_org, ltc):
        """Importance of every node of the arena for one shading point."""
        importances = torch.zeros(self.num_nodes, dtype=torch.float32, device=self.device)
        launch_kernel_from_torch(
            self.device,
            node_importances_kernel,
            self.num_nodes,
            [
                self.to_warp(),
                shapes,
                edges,
                wp.vec3f(*p),
                wp.vec3f(*n),
                wp.mat33f(*np.asarray(m_inv, dtype=np.float32).reshape(-1).tolist()),
                cam_org,
                ltc,
                wp.from_torch(importances),
            ],
        )
        return importances

    def sample(self, shapes, edges, p, n, m_inv, cam_org, ltc, u):
        """Batched tree descent. p, n are [Q, 3], m_inv [Q, 3, 3], u [Q]."""
        num_queries = u.shape[0]
        edge_ids = torch.full((num_queries,), -1, dtype=torch.int32, device=self.device)
        pmfs = torch.zeros(num_queries, dtype=torch.float32, device=self.device)
        launch_kernel_from_torch(
            self.device,
            sample_edge_tree_kernel,
            num_queries,
            [
                self.to_warp(),
                shapes,
                edges,
                wp.from_torch(p.contiguous(), dtype=wp.vec3f),
                wp.from_torch(n.contiguous(), dtype=wp.vec3f),
                wp.from_torch(m_inv.contiguous(), dtype=wp.mat33f),
                cam_org,
                ltc,
                wp.from_torch(u.contiguous()),
                wp.from_torch(edge_ids),
                wp.from_torch(pmfs),
            ],
        )
        return edge_ids, pmfs
