from dataclasses import dataclass

import torch
import warp as wp


@wp.struct
class Shapes:
    vertices: wp.array(dtype=wp.vec3f)
    indices: wp.array(dtype=wp.vec3i)
    vertex_offsets: wp.array(dtype=wp.int32)
    index_offsets: wp.array(dtype=wp.int32)
    material_ids: wp.array(dtype=wp.int32)


@wp.struct
class Edges:
    shape_id: wp.array(dtype=wp.int32)
    v0: wp.array(dtype=wp.int32)
    v1: wp.array(dtype=wp.int32)
    f0: wp.array(dtype=wp.int32)
    f1: wp.array(dtype=wp.int32)


@wp.func
def get_vertex(shapes: Shapes, shape_id: int, vertex_id: int) -> wp.vec3f:
    return shapes.vertices[shapes.vertex_offsets[shape_id] + vertex_id]


@wp.func
def get_indices(shapes: Shapes, shape_id: int, tri_id: int) -> wp.vec3i:
    return shapes.indices[shapes.index_offsets[shape_id] + tri_id]


@wp.func
def get_v0(shapes: Shapes, edges: Edges, edge_id: int) -> wp.vec3f:
    return get_vertex(shapes, edges.shape_id[edge_id], edges.v0[edge_id])


@wp.func
def get_v1(shapes: Shapes, edges: Edges, edge_id: int) -> wp.vec3f:
    return get_vertex(shapes, edges.shape_id[edge_id], edges.v1[edge_id])


@wp.func
def face_normal(shapes: Shapes, shape_id: int, tri_id: int) -> wp.vec3f:
    ind = get_indices(shapes, shape_id, tri_id)
    p0 = get_vertex(shapes, shape_id, ind[0])
    p1 = get_vertex(shapes, shape_id, ind[1])
    p2 = get_vertex(shapes, shape_id, ind[2])
    n = wp.cross(p1 - p0, p2 - p0)
    n_len = wp.length(n)
    if n_len <= 0.0:
        return wp.vec3f(0.0, 0.0, 0.0)
    return n / n_len


@wp.func
def is_silhouette(shapes: Shapes, edges: Edges, edge_id: int, p: wp.vec3f) -> bool:
    f0 = edges.f0[edge_id]
    f1 = edges.f1[edge_id]
    if f0 == -1 or f1 == -1:
        # Boundary edge, only adjacent to one face
        return True
    shape_id = edges.shape_id[edge_id]
    v0 = get_v0(shapes, edges, edge_id)
    n0 = face_normal(shapes, shape_id, f0)
    n1 = face_normal(shapes, shape_id, f1)
    frontfacing0 = wp.dot(p - v0, n0) > 0.0
    frontfacing1 = wp.dot(p - v0, n1) > 0.0
    return frontfacing0 != frontfacing1


@wp.func
def exterior_dihedral_angle(shapes: Shapes, edges: Edges, edge_id: int) -> float:
    f1 = edges.f1[edge_id]
    if f1 == -1:
        return wp.pi
    shape_id = edges.shape_id[edge_id]
    n0 = face_normal(shapes, shape_id, edges.f0[edge_id])
    n1 = face_normal(shapes, shape_id, f1)
    return wp.acos(wp.clamp(wp.dot(n0, n1), -1.0, 1.0))


@dataclass
class TorchShapes:
    vertices: torch.Tensor
    indices: torch.Tensor
    vertex_offsets: torch.Tensor
    index_offsets: torch.Tensor
    material_ids: torch.Tensor

    @classmethod
    def from_meshes(cls, meshes, material_ids=None, device="cpu"):
        """Concatenate a list of (vertices [V, 3], indices [F, 3]) meshes.

        Triangle indices stay local to their shape.
        """
        if len(meshes) == 0:
            raise ValueError("At least one mesh is required")
        if material_ids is None:
            material_ids = [0] * len(meshes)
        if len(material_ids) != len(meshes):
            raise ValueError(
                f"Got {len(material_ids)} material ids for {len(meshes)} meshes"
            )

        vertex_counts = []
        index_counts = []
        for vertices, indices in meshes:
            if vertices.ndim != 2 or vertices.shape[1] != 3:
                raise ValueError(f"Expected [V, 3] vertices, got {tuple(vertices.shape)}")
            if indices.ndim != 2 or indices.shape[1] != 3:
                raise ValueError(f"Expected [F, 3] indices, got {tuple(indices.shape)}")
            vertex_counts.append(vertices.shape[0])
            index_counts.append(indices.shape[0])

        zero = torch.zeros(1, dtype=torch.int32)
        vertex_offsets = torch.cat(
            [zero, torch.cumsum(torch.tensor(vertex_counts), dim=0).to(torch.int32)]
        )
        index_offsets = torch.cat(
            [zero, torch.cumsum(torch.tensor(index_counts), dim=0).to(torch.int32)]
        )

        return cls(
            vertices=torch.cat([v.detach().to(torch.float32) for v, _ in meshes])
            .contiguous()
            .to(device),
            indices=torch.cat([i.to(torch.int32) for _, i in meshes])
            .contiguous()
            .to(device),
            vertex_offsets=vertex_offsets.to(device),
            index_offsets=index_offsets.to(device),
            material_ids=torch.tensor(material_ids, dtype=torch.int32, device=device),
        )

    @property
    def device(self):
        return self.vertices.device

    @property
    def num_shapes(self) -> int:
        return self.material_ids.shape[0]

    def num_triangles(self, shape_id: int) -> int:
        return int(self.index_offsets[shape_id + 1] - self.index_offsets[shape_id])

    def shape_vertices(self, shape_id: int) -> torch.Tensor:
        start = int(self.vertex_offsets[shape_id])
        end = int(self.vertex_offsets[shape_id + 1])
        return self.vertices[start:end]

    def shape_indices(self, shape_id: int) -> torch.Tensor:
        start = int(self.index_offsets[shape_id])
        end = int(self.index_offsets[shape_id + 1])
        return self.indices[start:end]

    def to_warp(self) -> Shapes:
        shapes = Shapes()
        shapes.vertices = wp.from_torch(self.vertices, dtype=wp.vec3f)
        shapes.indices = wp.from_torch(self.indices, dtype=wp.vec3i)
        shapes.vertex_offsets = wp.from_torch(self.vertex_offsets)
        shapes.index_offsets = wp.from_torch(self.index_offsets)
        shapes.material_ids = wp.from_torch(self.material_ids)
        return shapes


@wp.func
def expand_bits(v: wp.uint64):
    """Spread the low 21 bits of v so that two zero bits follow each one."""
    v = v & wp.uint64(0x00000000001FFFFF)
    v = (v | (v << wp.uint64(32))) & wp.uint64(0x001F00000000FFFF)
    v = (v | (v << wp.uint64(16))) & wp.uint64(0x001F0000FF0000FF)
    v = (v | (v << wp.uint64(8))) & wp.uint64(0x100F00F00F00F00F)
    v = (v | (v << wp.uint64(4))) & wp.uint64(0x10C30C30C30C30C3)
    v = (v | (v << wp.uint64(2))) & wp.uint64(0x1249249249249249)
    return v


@wp.func
def quantize(x: float, extent: float):
    # 21 bits per axis, so three axes fit in one int64 key
    cells = float(2097152.0)
    return wp.uint64(wp.clamp(x / wp.max(extent, 1e-6) * cells, 0.0, cells - 1.0))


@wp.kernel(enable_backward=False)
def morton_code_kernel(
    midpoints: wp.array(dtype=wp.vec3f),
    lower: wp.vec3f,
    upper: wp.vec3f,
    codes: wp.array(dtype=wp.int64),
):
    tid = wp.tid()
    offset = midpoints[tid] - lower
    extent = upper - lower
    x = expand_bits(quantize(offset[0], extent[0]))
    y = expand_bits(quantize(offset[1], extent[1]))
    z = expand_bits(quantize(offset[2], extent[2]))
    codes[tid] = wp.int64((x << wp.uint64(2)) | (y << wp.uint64(1)) | z)


def radix_argsort(keys: torch.Tensor) -> torch.Tensor:
    """Stable argsort of non-negative int64 keys with Warp's radix sort.

    Used for the packed vertex-pair keys of edge collection and for the
    Morton codes of edge midpoints.
    """
    count = keys.shape[0]
    device = keys.device
    if count == 0:
        return torch.zeros(0, dtype=torch.int64, device=device)

    with wp.ScopedDevice(str(device)):
        # radix_sort_pairs uses the upper half as scratch space
        wp_keys = wp.zeros(2 * count, dtype=wp.int64)
        wp.copy(wp_keys, wp.from_torch(keys.contiguous()), count=count)
        wp_indices = wp.zeros(2 * count, dtype=wp.int32)
        wp.copy(
            wp_indices,
            wp.from_torch(torch.arange(count, dtype=torch.int32, device=device)),
            count=count,
        )
        wp.utils.radix_sort_pairs(wp_keys, wp_indices, count)
        return wp.to_torch(wp_indices)[:count].to(torch.int64)


def morton_order(midpoints: torch.Tensor) -> torch.Tensor:
    """Permutation that puts edges in Z-order of their midpoints.

    The edge tree is built over this order, so neighbouring leaves hold
    spatially close edges and the median splits stay tight. Codes are
    quantized inside the bounding box of the midpoints.
    """
    num_edges = midpoints.shape[0]
    device = midpoints.device
    if num_edges == 0:
        return torch.zeros(0, dtype=torch.int64, device=device)

    lower = midpoints.min(dim=0)[0].tolist()
    upper = midpoints.max(dim=0)[0].tolist()
    codes = torch.zeros(num_edges, dtype=torch.int64, device=device)
    with wp.ScopedDevice(str(device)):
        wp.launch(
            kernel=morton_code_kernel,
            dim=num_edges,
            inputs=[
                wp.from_torch(midpoints.contiguous(), dtype=wp.vec3f),
                wp.vec3f(*lower),
                wp.vec3f(*upper),
                wp.from_torch(codes),
            ],
        )
    return radix_argsort(codes)
