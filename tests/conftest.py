import math

import pytest
import torch
import warp as wp

from configs import EdgeSamplingParams
from edgediff.camera import TorchCamera
from edgediff.geometry import TorchShapes
from edgediff.ltc import load_ltc_tables

wp.init()


def tetrahedron():
    vertices = torch.tensor(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]
    )
    # Outward facing
    indices = torch.tensor([[0, 2, 1], [0, 1, 3], [0, 3, 2], [1, 2, 3]], dtype=torch.int32)
    return vertices, indices


def quad(x0, x1, y0, y1, z):
    vertices = torch.tensor([[x0, y0, z], [x1, y0, z], [x1, y1, z], [x0, y1, z]])
    indices = torch.tensor([[0, 1, 2], [0, 2, 3]], dtype=torch.int32)
    return vertices, indices


def look_forward_camera(fov=45.0, width=32, height=32, fisheye=False):
    """Camera at the origin looking down +z. Its right axis is world -x."""
    return TorchCamera(
        position=torch.tensor([0.0, 0.0, 0.0]),
        look_at=torch.tensor([0.0, 0.0, 1.0]),
        up=torch.tensor([0.0, 1.0, 0.0]),
        fov=fov,
        width=width,
        height=height,
        fisheye=fisheye,
    )


def fov_factor(fov):
    return 1.0 / math.tan(0.5 * math.radians(fov))


@pytest.fixture
def device():
    return "cpu"


@pytest.fixture
def sampling_params():
    return EdgeSamplingParams()


@pytest.fixture(scope="session")
def ltc():
    return load_ltc_tables(None, "cpu")


@pytest.fixture
def tetra_shapes():
    return TorchShapes.from_meshes([tetrahedron()])
