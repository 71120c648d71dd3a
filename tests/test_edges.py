import logging

import pytest
import torch

from edgediff.edges import F0, F1, SHAPE_ID, V0, V1, collect_edges, edges_to_warp
from edgediff.geometry import TorchShapes

from conftest import quad, tetrahedron


def edge_keys(edges):
    return [(int(e[V0]), int(e[V1])) for e in edges]


def test_tetrahedron_edges_are_merged():
    edges = collect_edges(TorchShapes.from_meshes([tetrahedron()]))

    assert edges.dtype == torch.int32
    assert edges.shape == (6, 5)
    assert edge_keys(edges) == [(0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3)]
    assert (edges[:, F1] != -1).all()
    # Triangles 0 = [0, 2, 1] and 1 = [0, 1, 3] share (0, 1)
    assert edges[0, F0] == 0 and edges[0, F1] == 1


def test_boundary_edges_of_a_quad():
    edges = collect_edges(TorchShapes.from_meshes([quad(0.0, 1.0, 0.0, 1.0, 1.0)]))

    assert edge_keys(edges) == [(0, 1), (0, 2), (0, 3), (1, 2), (2, 3)]
    boundary = edges[:, F1] == -1
    assert boundary.sum() == 4
    diagonal = edges[1]
    assert diagonal[F0] == 0 and diagonal[F1] == 1
    assert (edges[:, V0] < edges[:, V1]).all()


def test_traversal_order_does_not_change_the_edges():
    vertices, indices = tetrahedron()
    reference = collect_edges(TorchShapes.from_meshes([(vertices, indices)]))

    perm = torch.tensor([2, 0, 3, 1])
    shuffled = indices[perm].roll(1, dims=1)
    edges = collect_edges(TorchShapes.from_meshes([(vertices, shuffled)]))

    assert edge_keys(edges) == edge_keys(reference)
    for e, r in zip(edges, reference):
        faces = {int(perm[e[F0]]), int(perm[e[F1]])}
        assert faces == {int(r[F0]), int(r[F1])}


def test_non_manifold_edges_keep_two_faces(caplog):
    vertices = torch.rand(5, 3)
    indices = torch.tensor([[0, 1, 2], [1, 0, 3], [0, 1, 4]], dtype=torch.int32)

    with caplog.at_level(logging.DEBUG, logger="edgediff.edges"):
        edges = collect_edges(TorchShapes.from_meshes([(vertices, indices)]))

    shared = edges[(edges[:, V0] == 0) & (edges[:, V1] == 1)]
    assert shared.shape[0] == 1
    assert shared[0, F0] == 0 and shared[0, F1] == 1
    assert "non-manifold" in caplog.text


def test_shapes_are_concatenated():
    shapes = TorchShapes.from_meshes(
        [tetrahedron(), quad(0.0, 1.0, 0.0, 1.0, 2.0)], material_ids=[0, 1]
    )
    edges = collect_edges(shapes)

    assert edges.shape[0] == 6 + 5
    assert (edges[:6, SHAPE_ID] == 0).all()
    assert (edges[6:, SHAPE_ID] == 1).all()
    # Vertex ids stay local to their shape
    assert edges[6:, V1].max() == 3


def test_out_of_range_indices_raise():
    vertices, indices = tetrahedron()
    indices = indices.clone()
    indices[0, 0] = 7
    with pytest.raises(ValueError):
        collect_edges(TorchShapes.from_meshes([(vertices, indices)]))


def test_edges_to_warp_checks_layout():
    with pytest.raises(ValueError):
        edges_to_warp(torch.zeros((3, 4), dtype=torch.int32))

    edges = collect_edges(TorchShapes.from_meshes([tetrahedron()]))
    wp_edges = edges_to_warp(edges)
    assert wp_edges.v0.shape[0] == 6
    assert wp_edges.f1.numpy().tolist() == edges[:, F1].tolist()
