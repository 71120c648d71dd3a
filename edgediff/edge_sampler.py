import logging
from dataclasses import dataclass

import torch
import warp as wp

from .camera import TorchCamera
from .derivatives import (
    accumulate_secondary_edge_derivatives,
    update_secondary_edge_weights,
)
from .distribution import build_distribution, primary_edge_weights, secondary_edge_weights
from .edge_tree import EdgeTree
from .edges import collect_edges, edges_to_warp
from .geometry import TorchShapes
from .ltc import load_ltc_tables
from .materials import TorchMaterials
from .primary import (
    compute_primary_edge_derivatives,
    sample_primary_edges,
    update_primary_edge_weights,
)
from .records import (
    ChannelInfo,
    TorchDCameras,
    TorchDVertices,
    TorchPrimaryEdgeRecords,
    TorchRayDifferentials,
    TorchRays,
    TorchSecondaryEdgeRecords,
)
from .secondary import sample_secondary_edges
from .warp_interop import warp_device

logger = logging.getLogger(__name__)


@dataclass
class Scene:
    shapes: TorchShapes
    materials: TorchMaterials
    camera: TorchCamera
    has_envmap: bool = False
    use_gpu: bool = False

    @property
    def device(self) -> str:
        return warp_device(self.use_gpu)


@dataclass
class PrimaryEdgeSamples:
    """Output of sample_primary_edges for N samples, ray buffers are 2N."""

    records: TorchPrimaryEdgeRecords
    rays: TorchRays
    ray_differentials: TorchRayDifferentials
    throughputs: torch.Tensor
    channel_multipliers: torch.Tensor

    @classmethod
    def zeros(cls, num_samples, num_channels, device):
        return cls(
            records=TorchPrimaryEdgeRecords.zeros(num_samples, device),
            rays=TorchRays.zeros(2 * num_samples, device),
            ray_differentials=TorchRayDifferentials.zeros(2 * num_samples, device),
            throughputs=torch.zeros((2 * num_samples, 3), dtype=torch.float32, device=device),
            channel_multipliers=torch.zeros(
                (2 * num_samples, num_channels), dtype=torch.float32, device=device
            ),
        )

    def clear_(self):
        self.records.clear_()
        self.rays.clear_()
        self.ray_differentials.clear_()
        self.throughputs.zero_()
        self.channel_multipliers.zero_()
        return self


@dataclass
class SecondaryEdgeSamples:
    """Output of sample_secondary_edges for N samples, ray buffers are 2N."""

    records: TorchSecondaryEdgeRecords
    rays: TorchRays
    bsdf_differentials: TorchRayDifferentials
    throughputs: torch.Tensor
    min_roughness: torch.Tensor

    @classmethod
    def zeros(cls, num_samples, device):
        return cls(
            records=TorchSecondaryEdgeRecords.zeros(num_samples, device),
            rays=TorchRays.zeros(2 * num_samples, device),
            bsdf_differentials=TorchRayDifferentials.zeros(2 * num_samples, device),
            throughputs=torch.zeros((2 * num_samples, 3), dtype=torch.float32, device=device),
            min_roughness=torch.zeros(2 * num_samples, dtype=torch.float32, device=device),
        )

    def clear_(self):
        self.records.clear_()
        self.rays.clear_()
        self.bsdf_differentials.clear_()
        self.throughputs.zero_()
        self.min_roughness.zero_()
        return self


def _check_shape(name, tensor, shape):
    if tuple(tensor.shape) != tuple(shape):
        raise ValueError(f"{name} has shape {tuple(tensor.shape)}, expected {tuple(shape)}")


class EdgeSampler:
    """Samples points on visibility discontinuities and turns the traced
    contributions of the two sides into derivatives of the scene vertices
    and camera.

    Edges, the primary distribution and the secondary sampling structure are
    built once at construction. The scene must not change afterwards.
    """

    def __init__(self, args, scene: Scene):
        self.args = args
        self.scene = scene
        self.device = scene.device

        self.shapes = scene.shapes
        if self.shapes.device.type != torch.device(self.device).type:
            raise ValueError(
                f"Shapes live on {self.shapes.device} but the sampler runs on {self.device}"
            )
        self.camera = scene.camera
        self.shapes_wp = self.shapes.to_warp()
        self.materials_wp = scene.materials.to_warp()
        self.camera_wp = self.camera.to_warp()
        self.cam_org = wp.vec3f(*self.camera.origin().detach().cpu().tolist())

        self.edges = collect_edges(self.shapes)
        self.edges_wp = edges_to_warp(self.edges)
        self.num_edges = self.edges.shape[0]

        self.primary_pmf, self.primary_cdf = build_distribution(
            primary_edge_weights(self.camera_wp, self.shapes_wp, self.edges_wp, self.device)
        )

        self.use_edge_tree = args.use_edge_tree
        if self.use_edge_tree:
            self.edge_tree = EdgeTree(self.device).build(
                self.shapes_wp, self.edges_wp, self.cam_org
            )
            # Unused by the tree path, kept non-empty for the launch
            self.secondary_pmf = torch.zeros(1, dtype=torch.float32, device=self.device)
            self.secondary_cdf = torch.zeros(1, dtype=torch.float32, device=self.device)
        else:
            self.edge_tree = EdgeTree.empty(self.device)
            self.secondary_pmf, self.secondary_cdf = build_distribution(
                secondary_edge_weights(self.shapes_wp, self.edges_wp, self.device)
            )
        self.edge_tree_wp = self.edge_tree.to_warp()
        self.ltc = load_ltc_tables(args.ltc_table, self.device)

        logger.info(
            "Edge sampler ready on %s: %d edges, secondary selection by %s",
            self.device,
            self.num_edges,
            "edge tree" if self.use_edge_tree else "resampling",
        )

    def sample_primary_edges(
        self,
        samples: torch.Tensor,
        d_rendered_image: torch.Tensor,
        channel_info: ChannelInfo = None,
        out: PrimaryEdgeSamples = None,
    ) -> PrimaryEdgeSamples:
        """Sample N points on silhouettes seen from the camera.

        samples is [N, 2] (edge selection, position on the edge) and
        d_rendered_image [W * H, num_total_dimensions].
        """
        if channel_info is None:
            channel_info = ChannelInfo()
        num_samples = samples.shape[0]
        _check_shape("samples", samples, (num_samples, 2))
        self._check_image(d_rendered_image, channel_info)
        if out is None:
            out = PrimaryEdgeSamples.zeros(
                num_samples, channel_info.num_total_dimensions, self.device
            )
        else:
            out.records.validate(num_samples)
            out.rays.validate(2 * num_samples)
            out.ray_differentials.validate(2 * num_samples)
            _check_shape("throughputs", out.throughputs, (2 * num_samples, 3))
            _check_shape(
                "channel_multipliers",
                out.channel_multipliers,
                (2 * num_samples, channel_info.num_total_dimensions),
            )
        if self.num_edges == 0:
            return out.clear_()

        sample_primary_edges(
            self.device,
            self.camera_wp,
            self.shapes_wp,
            self.edges_wp,
            self.primary_pmf,
            self.primary_cdf,
            samples.to(torch.float32),
            d_rendered_image.to(torch.float32),
            channel_info.radiance_dimension,
            self.args.primary_ray_offset,
            out.records,
            out.rays,
            out.ray_differentials,
            out.throughputs,
            out.channel_multipliers,
        )
        return out

    def update_primary_edge_weights(self, primary: PrimaryEdgeSamples, isects):
        isects.validate(2 * len(primary.records))
        update_primary_edge_weights(
            self.device,
            self.edges_wp,
            primary.records,
            isects,
            primary.throughputs,
            primary.channel_multipliers,
            enabled=self.args.enable_primary_edge_correction,
        )
        return primary

    def sample_secondary_edges(
        self,
        active_pixels: torch.Tensor,
        samples: torch.Tensor,
        incoming_rays,
        incoming_ray_differentials,
        shading_isects,
        shading_points,
        throughputs: torch.Tensor,
        min_roughness: torch.Tensor,
        d_rendered_image: torch.Tensor,
        channel_info: ChannelInfo = None,
        out: SecondaryEdgeSamples = None,
    ) -> SecondaryEdgeSamples:
        """Sample N edge points as seen from the shading points of the active
        pixels.

        samples is [N, 4] (lobe, edge selection, resampling, position on the
        edge); the per-pixel inputs are indexed by active_pixels.
        """
        if channel_info is None:
            channel_info = ChannelInfo()
        num_samples = active_pixels.shape[0]
        _check_shape("samples", samples, (num_samples, 4))
        self._check_image(d_rendered_image, channel_info)
        num_pixels = d_rendered_image.shape[0]
        incoming_rays.validate(num_pixels)
        incoming_ray_differentials.validate(num_pixels)
        shading_isects.validate(num_pixels)
        shading_points.validate(num_pixels)
        _check_shape("throughputs", throughputs, (num_pixels, 3))
        _check_shape("min_roughness", min_roughness, (num_pixels,))
        if out is None:
            out = SecondaryEdgeSamples.zeros(num_samples, self.device)
        else:
            out.records.validate(num_samples)
            out.rays.validate(2 * num_samples)
            out.bsdf_differentials.validate(2 * num_samples)
            _check_shape("throughputs", out.throughputs, (2 * num_samples, 3))
            _check_shape("min_roughness", out.min_roughness, (2 * num_samples,))
        if self.num_edges == 0:
            out.clear_()
            out.min_roughness.copy_(
                min_roughness[active_pixels.long()].to(torch.float32).repeat_interleave(2)
            )
            return out

        sample_secondary_edges(
            self.device,
            self.shapes_wp,
            self.materials_wp,
            self.edges_wp,
            self.cam_org,
            self.use_edge_tree,
            self.secondary_pmf,
            self.secondary_cdf,
            self.edge_tree_wp,
            self.ltc,
            self.args.diffuse_roughness_threshold,
            self.args.secondary_ray_offset,
            active_pixels.to(torch.int32),
            samples.to(torch.float32),
            incoming_rays,
            incoming_ray_differentials,
            shading_isects,
            shading_points,
            throughputs.to(torch.float32),
            min_roughness.to(torch.float32),
            d_rendered_image.to(torch.float32),
            channel_info.radiance_dimension,
            out.records,
            out.rays,
            out.bsdf_differentials,
            out.throughputs,
            out.min_roughness,
        )
        return out

    def update_secondary_edge_weights(
        self,
        active_pixels: torch.Tensor,
        shading_points,
        edge_isects,
        edge_surface_points,
        secondary: SecondaryEdgeSamples,
    ) -> SecondaryEdgeSamples:
        """Apply the Jacobian between the edge parameter and the points hit by
        the traced secondary edge rays, in place."""
        num_samples = active_pixels.shape[0]
        secondary.records.validate(num_samples)
        edge_isects.validate(2 * num_samples)
        edge_surface_points.validate(2 * num_samples)
        update_secondary_edge_weights(
            self.device,
            self.shapes_wp,
            self.edges_wp,
            self.scene.has_envmap,
            active_pixels.to(torch.int32),
            shading_points,
            edge_isects,
            edge_surface_points,
            secondary.records,
            secondary.throughputs,
        )
        return secondary

    def accumulate_edge_derivatives(self, records, edge_contribs: torch.Tensor, **buffers):
        """Turn the scalar contribution of every edge ray into derivatives.

        For primary records returns (d_vertices, d_cameras). For secondary
        records, active_pixels, shading_points and edge_surface_points are
        required and (d_vertices, d_points) is returned. Output buffers may be
        passed in as keyword arguments of the same names.
        """
        num_samples = len(records)
        _check_shape("edge_contribs", edge_contribs, (2 * num_samples,))
        edge_contribs = edge_contribs.to(torch.float32)
        d_vertices = buffers.get("d_vertices")
        if d_vertices is None:
            d_vertices = TorchDVertices.zeros(2 * num_samples, self.device)
        d_vertices.validate(2 * num_samples)

        if isinstance(records, TorchPrimaryEdgeRecords):
            d_cameras = buffers.get("d_cameras")
            if d_cameras is None:
                d_cameras = TorchDCameras.zeros(num_samples, self.device)
            d_cameras.validate(num_samples)
            if self.num_edges == 0:
                return d_vertices.clear_(), d_cameras.clear_()
            compute_primary_edge_derivatives(
                self.device,
                self.camera_wp,
                self.shapes_wp,
                self.edges_wp,
                records,
                edge_contribs,
                d_vertices,
                d_cameras,
            )
            return d_vertices, d_cameras

        if isinstance(records, TorchSecondaryEdgeRecords):
            for name in ("active_pixels", "shading_points", "edge_surface_points"):
                if buffers.get(name) is None:
                    raise ValueError(f"{name} is required for secondary edge derivatives")
            shading_points = buffers["shading_points"]
            buffers["edge_surface_points"].validate(2 * num_samples)
            d_points = buffers.get("d_points")
            if d_points is None:
                d_points = torch.zeros(
                    (len(shading_points), 3), dtype=torch.float32, device=self.device
                )
            _check_shape("d_points", d_points, (len(shading_points), 3))
            if self.num_edges == 0:
                return d_vertices.clear_(), d_points
            accumulate_secondary_edge_derivatives(
                self.device,
                self.shapes_wp,
                self.edges_wp,
                buffers["active_pixels"].to(torch.int32),
                shading_points,
                buffers["edge_surface_points"],
                records,
                edge_contribs,
                d_vertices,
                d_points,
            )
            return d_vertices, d_points

        raise ValueError(f"Unknown edge record type {type(records).__name__}")

    def _check_image(self, d_rendered_image, channel_info):
        if d_rendered_image.ndim != 2 or (
            d_rendered_image.shape[1] != channel_info.num_total_dimensions
        ):
            raise ValueError(
                f"d_rendered_image has shape {tuple(d_rendered_image.shape)}, expected "
                f"[num_pixels, {channel_info.num_total_dimensions}]"
            )
