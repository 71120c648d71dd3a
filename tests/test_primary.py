import pytest
import torch

from check_gradients import intersect_triangles
from configs import EdgeSamplingParams
from edgediff.derivatives import reduce_camera_derivatives, reduce_vertex_derivatives
from edgediff.edge_sampler import EdgeSampler, Scene
from edgediff.geometry import TorchShapes
from edgediff.materials import TorchMaterials
from edgediff.records import ChannelInfo, TorchIntersections

from conftest import fov_factor, look_forward_camera, quad

WIDTH = 32
HEIGHT = 32
DEPTH = 2.0
EDGE_X = -0.2


def occluder_scene(fisheye=False, z=DEPTH):
    # Covers the screen left of the world x = EDGE_X edge, which is the
    # only edge on screen
    vertices, indices = quad(EDGE_X, 5.0, -5.0, 5.0, z)
    return Scene(
        shapes=TorchShapes.from_meshes([(vertices, indices)]),
        materials=TorchMaterials.from_lists([[0.5, 0.5, 0.5]], [[0.0, 0.0, 0.0]], [0.5]),
        camera=look_forward_camera(fov=45.0, width=WIDTH, height=HEIGHT, fisheye=fisheye),
    ), vertices[indices.long()]


def coverage_image_gradient():
    return torch.full((WIDTH * HEIGHT, 3), 0.0).index_fill_(
        1, torch.tensor([0]), 1.0 / (WIDTH * HEIGHT)
    )


def trace(primary, triangles):
    tri_ids, _ = intersect_triangles(
        primary.rays.org, primary.rays.dir, triangles, primary.rays.tmin, primary.rays.tmax
    )
    isects = TorchIntersections(
        shape_id=torch.where(tri_ids >= 0, 0, -1).to(torch.int32),
        tri_id=tri_ids.to(torch.int32),
    )
    return isects, (tri_ids >= 0).float()


def test_quad_occluder_gradient_matches_analytic_coverage():
    torch.manual_seed(0)
    scene, triangles = occluder_scene()
    sampler = EdgeSampler(EdgeSamplingParams(), scene)

    num_samples = 50000
    primary = sampler.sample_primary_edges(
        torch.rand(num_samples, 2), coverage_image_gradient()
    )
    _, hit = trace(primary, triangles)
    edge_contribs = primary.throughputs[:, 0] * hit
    d_vertices, d_cameras = sampler.accumulate_edge_derivatives(primary.records, edge_contribs)

    scale = WIDTH * HEIGHT / num_samples
    (d_v,) = reduce_vertex_derivatives(d_vertices, sampler.shapes)
    d_translation = d_v.sum(dim=0).double() * scale
    _, d_fov = reduce_camera_derivatives(d_cameras)

    # Covered fraction is 0.5 + 0.5 f (-EDGE_X) / z
    f = fov_factor(45.0)
    assert float(d_translation[0]) == pytest.approx(-0.5 * f / DEPTH, rel=0.05)
    assert abs(float(d_translation[1])) < 0.02
    assert float(d_translation[2]) == pytest.approx(
        0.5 * f * EDGE_X / DEPTH**2, rel=0.05
    )
    assert float(d_fov) * scale == pytest.approx(-0.5 * EDGE_X / DEPTH, rel=0.05)


def test_only_the_visible_edge_is_sampled():
    torch.manual_seed(1)
    scene, triangles = occluder_scene()
    sampler = EdgeSampler(EdgeSamplingParams(), scene)
    primary = sampler.sample_primary_edges(torch.rand(1000, 2), coverage_image_gradient())

    valid = primary.records.edge_id >= 0
    assert valid.any()
    # Edge (0, 3) of the quad
    assert (primary.records.edge_id[valid] == 2).all()
    edge_pt = primary.records.edge_pt[valid]
    expected_x = 0.5 + 0.5 * fov_factor(45.0) * (-EDGE_X) / DEPTH
    assert torch.allclose(edge_pt[:, 0], torch.full_like(edge_pt[:, 0], expected_x), atol=1e-5)

    # Exactly one ray of every pair hits the occluder, with opposite signs
    _, hit = trace(primary, triangles)
    pair_hits = hit.reshape(-1, 2)[valid].sum(dim=1)
    assert (pair_hits == 1).all()
    t = primary.throughputs.reshape(-1, 2, 3)[valid]
    assert torch.allclose(t[:, 0], -t[:, 1])
    assert torch.isinf(primary.rays.tmax.reshape(-1, 2)[valid]).all()


def test_channel_multipliers_cover_every_channel():
    torch.manual_seed(2)
    scene, _ = occluder_scene()
    sampler = EdgeSampler(EdgeSamplingParams(), scene)
    d_image = torch.rand(WIDTH * HEIGHT, 5)
    primary = sampler.sample_primary_edges(
        torch.rand(200, 2), d_image, ChannelInfo(num_total_dimensions=5, radiance_dimension=2)
    )

    assert primary.channel_multipliers.shape == (400, 5)
    # Radiance channels are the throughput
    assert torch.allclose(primary.channel_multipliers[:, 2:5], primary.throughputs)


def test_consistency_correction_is_disabled_by_default():
    torch.manual_seed(3)
    scene, _ = occluder_scene()
    primary_args = EdgeSamplingParams()
    sampler = EdgeSampler(primary_args, scene)
    primary = sampler.sample_primary_edges(torch.rand(100, 2), coverage_image_gradient())
    before = primary.throughputs.clone()

    misses = TorchIntersections.zeros(200, "cpu")
    sampler.update_primary_edge_weights(primary, misses)
    assert torch.equal(primary.throughputs, before)

    sampler = EdgeSampler(EdgeSamplingParams(enable_primary_edge_correction=True), scene)
    primary = sampler.sample_primary_edges(torch.rand(100, 2), coverage_image_gradient())
    sampler.update_primary_edge_weights(primary, misses)
    assert (primary.throughputs == 0).all()
    assert (primary.channel_multipliers == 0).all()


def test_fisheye_samples_are_finite():
    torch.manual_seed(4)
    scene, _ = occluder_scene(fisheye=True)
    sampler = EdgeSampler(EdgeSamplingParams(), scene)
    primary = sampler.sample_primary_edges(torch.rand(2000, 2), coverage_image_gradient())

    valid = primary.records.edge_id >= 0
    assert valid.any()
    assert torch.isfinite(primary.throughputs).all()
    edge_pt = primary.records.edge_pt[valid]
    assert ((edge_pt >= 0) & (edge_pt < 1)).all()


def test_edges_behind_the_camera_give_no_samples():
    scene, _ = occluder_scene(z=-2.0)
    sampler = EdgeSampler(EdgeSamplingParams(), scene)
    primary = sampler.sample_primary_edges(torch.rand(100, 2), coverage_image_gradient())

    assert (primary.records.edge_id == -1).all()
    assert (primary.throughputs == 0).all()
    assert float(sampler.primary_pmf.sum()) == 0.0


def test_buffers_are_validated():
    scene, _ = occluder_scene()
    sampler = EdgeSampler(EdgeSamplingParams(), scene)
    with pytest.raises(ValueError):
        sampler.sample_primary_edges(torch.rand(10, 3), coverage_image_gradient())
    with pytest.raises(ValueError):
        sampler.sample_primary_edges(torch.rand(10, 2), torch.zeros(WIDTH * HEIGHT, 4))
