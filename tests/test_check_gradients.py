import numpy as np
import plyfile
import pytest
import torch

from check_gradients import coverage, intersect_triangles, load_ply_mesh, unit_quad

from conftest import fov_factor, look_forward_camera


def test_polygons_are_fan_triangulated(tmp_path):
    vertex = np.array(
        [(0, 0, 0), (1, 0, 0), (1, 1, 0), (0, 1, 0), (2, 0, 0)],
        dtype=[("x", "f4"), ("y", "f4"), ("z", "f4")],
    )
    face = np.empty(2, dtype=[("vertex_indices", "i4", (4,))])
    face["vertex_indices"][0] = [0, 1, 2, 3]
    face["vertex_indices"][1] = [1, 4, 2, 2]
    path = str(tmp_path / "quad.ply")
    plyfile.PlyData(
        [plyfile.PlyElement.describe(vertex, "vertex"), plyfile.PlyElement.describe(face, "face")]
    ).write(path)

    vertices, indices = load_ply_mesh(path)
    assert vertices.shape == (5, 3)
    assert indices.tolist() == [[0, 1, 2], [0, 2, 3], [1, 4, 2], [1, 2, 2]]


def test_closest_hit_respects_the_ray_interval():
    vertices, indices = unit_quad()
    near = vertices + torch.tensor([0.0, 0.0, 1.0])
    far = vertices + torch.tensor([0.0, 0.0, 3.0])
    triangles = torch.cat([near[indices.long()], far[indices.long()]])

    org = torch.zeros(4, 3)
    dir = torch.tensor([[0.0, 0.0, 1.0], [0.0, 0.0, 1.0], [0.0, 0.0, 1.0], [1.0, 0.0, 0.0]])
    tmin = torch.tensor([0.0, 1.5, 0.0, 0.0])
    tmax = torch.tensor([float("inf"), float("inf"), 0.5, float("inf")])
    tri_ids, hit_t = intersect_triangles(org, dir, triangles, tmin, tmax)

    assert tri_ids[0] in (0, 1) and hit_t[0] == pytest.approx(1.0)
    assert tri_ids[1] in (2, 3) and hit_t[1] == pytest.approx(3.0)
    assert tri_ids[2] == -1 and tri_ids[3] == -1


def test_coverage_of_a_centered_quad():
    vertices, indices = unit_quad()
    depth = 2.0
    triangles = (vertices + torch.tensor([0.0, 0.0, depth]))[indices.long()]
    camera = look_forward_camera(fov=45.0, width=32, height=32)

    covered = coverage(camera, triangles, 256)
    width = 0.5 * fov_factor(45.0) / depth
    assert covered == pytest.approx(width * width, abs=0.01)
