import numpy as np
import pytest
import torch
import warp as wp

from edgediff.edge_tree import EdgeTree
from edgediff.edges import collect_edges, edges_to_warp
from edgediff.geometry import TorchShapes, morton_order, radix_argsort

from conftest import tetrahedron

CAM_ORG = wp.vec3f(3.0, 2.0, -4.0)


@pytest.fixture
def scene():
    triangle = (
        torch.tensor([[2.0, 0.0, 0.0], [3.0, 0.0, 0.0], [2.0, 1.0, 0.5]]),
        torch.tensor([[0, 1, 2]], dtype=torch.int32),
    )
    shapes = TorchShapes.from_meshes([tetrahedron(), triangle])
    edges = collect_edges(shapes)
    shapes_wp = shapes.to_warp()
    edges_wp = edges_to_warp(edges)
    tree = EdgeTree("cpu").build(shapes_wp, edges_wp, CAM_ORG)
    return tree, shapes_wp, edges_wp, edges.shape[0]


def parents_of(tree):
    children = tree.tensors["children"].numpy()
    parents = np.full(tree.num_nodes, -1)
    for node in range(tree.num_nodes):
        if children[node, 0] >= 0:
            parents[children[node, 0]] = node
            parents[children[node, 1]] = node
    return parents


def path_probability(tree, importances, parents, node):
    children = tree.tensors["children"].numpy()
    prob = 1.0
    while parents[node] >= 0:
        parent = parents[node]
        siblings = children[parent]
        total = importances[siblings[0]] + importances[siblings[1]]
        prob *= importances[node] / total if total > 0 else 0.0
        node = parent
    roots = [r for r in (tree.cs_root, tree.ncs_root) if r >= 0]
    total = sum(importances[r] for r in roots)
    return prob * importances[node] / total if total > 0 else 0.0


def query(tree, shapes, edges, ltc, p, n, u):
    num_queries = u.shape[0]
    return tree.sample(
        shapes,
        edges,
        torch.tensor(p, dtype=torch.float32).expand(num_queries, 3),
        torch.tensor(n, dtype=torch.float32).expand(num_queries, 3),
        torch.eye(3).expand(num_queries, 3, 3),
        CAM_ORG,
        ltc,
        u,
    )


def test_every_edge_is_one_leaf(scene):
    tree, _, _, num_edges = scene
    assert tree.cs_root == 0
    edge_ids = tree.tensors["edge_id"].numpy()
    leaves = edge_ids[edge_ids >= 0]
    assert sorted(leaves.tolist()) == list(range(num_edges))
    assert tree.num_nodes == 2 * num_edges - (tree.cs_root >= 0) - (tree.ncs_root >= 0)

    # Internal nodes bound their children
    children = tree.tensors["children"].numpy()
    wtl = tree.tensors["weighted_total_length"].numpy()
    p_min = tree.tensors["p_min"].numpy()
    p_max = tree.tensors["p_max"].numpy()
    for node in np.nonzero(edge_ids < 0)[0]:
        c0, c1 = children[node]
        assert wtl[node] == pytest.approx(wtl[c0] + wtl[c1], rel=1e-5)
        assert np.all(p_min[node] <= np.minimum(p_min[c0], p_min[c1]))
        assert np.all(p_max[node] >= np.maximum(p_max[c0], p_max[c1]))


def test_sample_probability_is_the_path_probability(scene, ltc):
    tree, shapes, edges, _ = scene
    p = (0.5, -1.0, 0.5)
    n = (0.0, 1.0, 0.0)
    importances = tree.node_importances(shapes, edges, p, n, np.eye(3), CAM_ORG, ltc).numpy()
    parents = parents_of(tree)
    leaf_of_edge = {
        int(e): node for node, e in enumerate(tree.tensors["edge_id"].numpy()) if e >= 0
    }

    num_queries = 20000
    u = (torch.arange(num_queries, dtype=torch.float32) + 0.5) / num_queries
    edge_ids, pmfs = query(tree, shapes, edges, ltc, p, n, u)
    assert (edge_ids >= 0).any()
    assert (pmfs[edge_ids >= 0] > 0).all()
    assert (pmfs[edge_ids < 0] == 0).all()

    estimate = 0.0
    for edge_id, pmf in zip(edge_ids.tolist(), pmfs.tolist()):
        if edge_id < 0:
            continue
        leaf = leaf_of_edge[edge_id]
        expected = path_probability(tree, importances, parents, leaf)
        assert pmf == pytest.approx(expected, rel=1e-4)
        estimate += importances[leaf] / pmf
    estimate /= num_queries

    reachable = sum(
        importances[leaf]
        for leaf in leaf_of_edge.values()
        if path_probability(tree, importances, parents, leaf) > 0
    )
    assert estimate == pytest.approx(reachable, rel=0.05)


def test_edges_below_the_tangent_plane_are_never_sampled(scene, ltc):
    tree, shapes, edges, _ = scene
    p = (0.5, 2.0, 0.5)
    n = (0.0, 1.0, 0.0)
    importances = tree.node_importances(shapes, edges, p, n, np.eye(3), CAM_ORG, ltc)
    assert (importances == 0).all()

    edge_ids, pmfs = query(tree, shapes, edges, ltc, p, n, torch.rand(64))
    assert (edge_ids == -1).all()
    assert (pmfs == 0).all()


def test_empty_tree_never_samples(scene, ltc):
    _, shapes, edges, _ = scene
    tree = EdgeTree.empty("cpu")
    edge_ids, pmfs = query(tree, shapes, edges, ltc, (0.5, -1.0, 0.5), (0.0, 1.0, 0.0), torch.rand(8))
    assert (edge_ids == -1).all()
    assert (pmfs == 0).all()


def test_radix_argsort_is_stable():
    keys = torch.tensor([3, 1, 3, 0, 1], dtype=torch.int64)
    assert radix_argsort(keys).tolist() == [3, 1, 4, 0, 2]
    assert radix_argsort(torch.zeros(0, dtype=torch.int64)).shape == (0,)


def test_morton_order_of_box_corners():
    corners = torch.tensor(
        [[x, y, z] for x in (0.0, 2.0) for y in (0.0, 1.0) for z in (0.0, 0.5)]
    )
    shuffle = torch.tensor([5, 2, 7, 0, 3, 6, 1, 4])
    order = morton_order(corners[shuffle])
    # x is the most significant axis, then y, then z
    assert shuffle[order].tolist() == list(range(8))
