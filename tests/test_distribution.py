import math

import pytest
import torch
import warp as wp

from edgediff.distribution import (
    build_distribution,
    primary_edge_weights,
    sample_distribution,
    secondary_edge_weights,
)
from edgediff.edges import F1, collect_edges, edges_to_warp
from edgediff.geometry import TorchShapes

from conftest import look_forward_camera, quad, tetrahedron


@wp.kernel
def sample_distribution_kernel(
    cdf: wp.array(dtype=wp.float32),
    u: wp.array(dtype=wp.float32),
    out: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    out[tid] = sample_distribution(cdf, u[tid])


def test_distribution_is_normalized_and_monotone():
    pmf, cdf = build_distribution(torch.tensor([1.0, 0.0, 3.0, 4.0]))

    assert torch.allclose(pmf, torch.tensor([0.125, 0.0, 0.375, 0.5]))
    assert torch.allclose(cdf, torch.tensor([0.0, 0.125, 0.125, 0.5]))
    assert (cdf[1:] >= cdf[:-1]).all()
    assert math.isclose(float(pmf.sum()), 1.0, rel_tol=1e-6)


def test_zero_total_gives_an_empty_distribution():
    pmf, cdf = build_distribution(torch.zeros(5))
    assert (pmf == 0).all()
    assert (cdf == 0).all()

    pmf, cdf = build_distribution(torch.zeros(0))
    assert pmf.shape == (0,) and cdf.shape == (0,)

    with pytest.raises(ValueError):
        build_distribution(torch.zeros(2, 2))


def test_sampling_skips_zero_weight_entries():
    pmf, cdf = build_distribution(torch.tensor([1.0, 0.0, 3.0, 4.0]))
    u = torch.tensor([0.0, 0.1, 0.125, 0.3, 0.5, 0.99])
    out = torch.zeros(6, dtype=torch.int32)
    wp.launch(
        sample_distribution_kernel,
        dim=6,
        inputs=[wp.from_torch(cdf), wp.from_torch(u), wp.from_torch(out)],
        device="cpu",
    )
    assert out.tolist() == [0, 0, 2, 2, 3, 3]


def test_secondary_weights_use_length_and_dihedral_angle(device):
    shapes = TorchShapes.from_meshes([quad(0.0, 2.0, 0.0, 1.0, 1.0)])
    edges = collect_edges(shapes)
    weights = secondary_edge_weights(shapes.to_warp(), edges_to_warp(edges), device)

    lengths = torch.tensor([2.0, math.sqrt(5.0), 1.0, 1.0, 2.0])
    boundary = edges[:, F1] == -1
    # Boundary edges count as fully folded, the flat diagonal never turns
    assert torch.allclose(weights[boundary], math.pi * lengths[boundary], rtol=1e-5)
    assert weights[~boundary].abs().max() < 1e-2


def test_tetrahedron_secondary_weights_are_positive(device):
    shapes = TorchShapes.from_meshes([tetrahedron()])
    weights = secondary_edge_weights(
        shapes.to_warp(), edges_to_warp(collect_edges(shapes)), device
    )
    assert (weights > 0).all()


def test_primary_weights_are_clipped_screen_lengths(device):
    camera = look_forward_camera(fov=90.0)
    # Only the left edge, world x = -0.5, is on screen
    shapes = TorchShapes.from_meshes([quad(-0.5, 50.0, -50.0, 50.0, 1.0)])
    edges = collect_edges(shapes)
    weights = primary_edge_weights(
        camera.to_warp(), shapes.to_warp(), edges_to_warp(edges), device
    )

    visible = torch.nonzero(weights).reshape(-1).tolist()
    # Edge (0, 3) runs from (-0.5, -50) to (-0.5, 50) and spans the screen height
    assert visible == [2]
    assert math.isclose(float(weights[2]), 1.0, rel_tol=1e-4)


def test_degenerate_edges_have_zero_weight(device):
    vertices = torch.tensor([[0.0, 0.0, 1.0], [0.0, 0.0, 1.0], [1.0, 0.0, 1.0]])
    indices = torch.tensor([[0, 1, 2]], dtype=torch.int32)
    shapes = TorchShapes.from_meshes([(vertices, indices)])
    edges = collect_edges(shapes)
    weights = secondary_edge_weights(shapes.to_warp(), edges_to_warp(edges), device)
    # (0, 1) has zero length
    assert float(weights[0]) == 0.0
