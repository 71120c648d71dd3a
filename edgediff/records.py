"""Struct-of-arrays buffers exchanged between the edge samplers and the
outer renderer.

Every buffer exists twice: a Warp struct passed to kernels and a torch
dataclass owning the storage. Ray-like buffers are sized 2N, slot 2i holds
the upper side of the discontinuity and 2i+1 the lower side.
"""

from dataclasses import dataclass, field, fields

import torch
import warp as wp


@wp.struct
class Rays:
    org: wp.array(dtype=wp.vec3f)
    dir: wp.array(dtype=wp.vec3f)
    tmin: wp.array(dtype=wp.float32)
    tmax: wp.array(dtype=wp.float32)


@wp.struct
class RayDifferentials:
    org_dx: wp.array(dtype=wp.vec3f)
    org_dy: wp.array(dtype=wp.vec3f)
    dir_dx: wp.array(dtype=wp.vec3f)
    dir_dy: wp.array(dtype=wp.vec3f)


@wp.struct
class Intersections:
    shape_id: wp.array(dtype=wp.int32)
    tri_id: wp.array(dtype=wp.int32)


@wp.struct
class SurfacePoints:
    position: wp.array(dtype=wp.vec3f)
    geom_normal: wp.array(dtype=wp.vec3f)
    shading_normal: wp.array(dtype=wp.vec3f)
    dn_dx: wp.array(dtype=wp.vec3f)
    dn_dy: wp.array(dtype=wp.vec3f)


@wp.struct
class PrimaryEdgeRecords:
    edge_id: wp.array(dtype=wp.int32)
    edge_pt: wp.array(dtype=wp.vec2f)


@wp.struct
class SecondaryEdgeRecords:
    edge_id: wp.array(dtype=wp.int32)
    edge_pt: wp.array(dtype=wp.vec3f)
    mwt: wp.array(dtype=wp.vec3f)


@wp.struct
class DVertices:
    shape_id: wp.array(dtype=wp.int32)
    vertex_id: wp.array(dtype=wp.int32)
    d_v: wp.array(dtype=wp.vec3f)


@wp.struct
class DCameras:
    d_world_to_cam: wp.array(dtype=wp.mat44f)
    d_fov_factor: wp.array(dtype=wp.float32)


def _column(dtype, shape=(), fill=0):
    return field(metadata={"dtype": dtype, "shape": shape, "fill": fill})


_TORCH_DTYPES = {
    wp.vec2f: torch.float32,
    wp.vec3f: torch.float32,
    wp.mat44f: torch.float32,
    wp.float32: torch.float32,
    wp.int32: torch.int32,
}


class TorchRecords:
    """Base for the torch side of a record buffer.

    Subclasses are dataclasses whose fields are declared with `_column`, and
    set `warp_struct` to the matching Warp struct.
    """

    warp_struct = None

    @classmethod
    def zeros(cls, size: int, device):
        tensors = {}
        for f in fields(cls):
            dtype = f.metadata["dtype"]
            tensors[f.name] = torch.full(
                (size, *f.metadata["shape"]),
                f.metadata["fill"],
                dtype=_TORCH_DTYPES[dtype],
                device=device,
            )
        return cls(**tensors)

    def clear_(self):
        for f in fields(self):
            getattr(self, f.name).fill_(f.metadata["fill"])
        return self

    def __len__(self):
        return getattr(self, fields(self)[0].name).shape[0]

    @property
    def device(self):
        return getattr(self, fields(self)[0].name).device

    def validate(self, size: int):
        for f in fields(self):
            tensor = getattr(self, f.name)
            expected = (size, *f.metadata["shape"])
            if tuple(tensor.shape) != expected:
                raise ValueError(
                    f"{type(self).__name__}.{f.name} has shape "
                    f"{tuple(tensor.shape)}, expected {expected}"
                )
            if tensor.dtype != _TORCH_DTYPES[f.metadata["dtype"]]:
                raise ValueError(
                    f"{type(self).__name__}.{f.name} has dtype {tensor.dtype}"
                )

    def to_warp(self):
        out = self.warp_struct()
        for f in fields(self):
            tensor = getattr(self, f.name).contiguous()
            setattr(out, f.name, wp.from_torch(tensor, dtype=f.metadata["dtype"]))
        return out


@dataclass
class TorchRays(TorchRecords):
    warp_struct = Rays
    org: torch.Tensor = _column(wp.vec3f, (3,))
    dir: torch.Tensor = _column(wp.vec3f, (3,))
    tmin: torch.Tensor = _column(wp.float32)
    tmax: torch.Tensor = _column(wp.float32, fill=float("inf"))


@dataclass
class TorchRayDifferentials(TorchRecords):
    warp_struct = RayDifferentials
    org_dx: torch.Tensor = _column(wp.vec3f, (3,))
    org_dy: torch.Tensor = _column(wp.vec3f, (3,))
    dir_dx: torch.Tensor = _column(wp.vec3f, (3,))
    dir_dy: torch.Tensor = _column(wp.vec3f, (3,))


@dataclass
class TorchIntersections(TorchRecords):
    warp_struct = Intersections
    shape_id: torch.Tensor = _column(wp.int32, fill=-1)
    tri_id: torch.Tensor = _column(wp.int32, fill=-1)


@dataclass
class TorchSurfacePoints(TorchRecords):
    warp_struct = SurfacePoints
    position: torch.Tensor = _column(wp.vec3f, (3,))
    geom_normal: torch.Tensor = _column(wp.vec3f, (3,))
    shading_normal: torch.Tensor = _column(wp.vec3f, (3,))
    dn_dx: torch.Tensor = _column(wp.vec3f, (3,))
    dn_dy: torch.Tensor = _column(wp.vec3f, (3,))


@dataclass
class TorchPrimaryEdgeRecords(TorchRecords):
    warp_struct = PrimaryEdgeRecords
    edge_id: torch.Tensor = _column(wp.int32, fill=-1)
    edge_pt: torch.Tensor = _column(wp.vec2f, (2,))


@dataclass
class TorchSecondaryEdgeRecords(TorchRecords):
    warp_struct = SecondaryEdgeRecords
    edge_id: torch.Tensor = _column(wp.int32, fill=-1)
    edge_pt: torch.Tensor = _column(wp.vec3f, (3,))
    mwt: torch.Tensor = _column(wp.vec3f, (3,))


@dataclass
class TorchDVertices(TorchRecords):
    warp_struct = DVertices
    shape_id: torch.Tensor = _column(wp.int32, fill=-1)
    vertex_id: torch.Tensor = _column(wp.int32, fill=-1)
    d_v: torch.Tensor = _column(wp.vec3f, (3,))


@dataclass
class TorchDCameras(TorchRecords):
    warp_struct = DCameras
    d_world_to_cam: torch.Tensor = _column(wp.mat44f, (4, 4))
    d_fov_factor: torch.Tensor = _column(wp.float32)


@dataclass
class ChannelInfo:
    """Layout of the per-pixel channels of the backpropagated image."""

    num_total_dimensions: int = 3
    radiance_dimension: int = 0

    def __post_init__(self):
        if self.radiance_dimension < 0 or (
            self.radiance_dimension + 3 > self.num_total_dimensions
        ):
            raise ValueError(
                f"Radiance channels [{self.radiance_dimension}, "
                f"{self.radiance_dimension + 3}) do not fit into "
                f"{self.num_total_dimensions} dimensions"
            )
