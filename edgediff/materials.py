from dataclasses import dataclass

import torch
import warp as wp

from .rendering_math import luminance


@wp.struct
class Materials:
    diffuse_reflectance: wp.array(dtype=wp.vec3f)
    specular_reflectance: wp.array(dtype=wp.vec3f)
    roughness: wp.array(dtype=wp.float32)


@wp.func
def get_diffuse_reflectance(materials: Materials, material_id: int) -> wp.vec3f:
    return materials.diffuse_reflectance[material_id]


@wp.func
def get_specular_reflectance(materials: Materials, material_id: int) -> wp.vec3f:
    return materials.specular_reflectance[material_id]


@wp.func
def get_roughness(materials: Materials, material_id: int) -> float:
    return materials.roughness[material_id]


@wp.func
def diffuse_luminance(materials: Materials, material_id: int) -> float:
    return luminance(materials.diffuse_reflectance[material_id])


@wp.func
def specular_luminance(materials: Materials, material_id: int) -> float:
    return luminance(materials.specular_reflectance[material_id])


@wp.func
def ggx_distribution(cos_h: float, alpha: float) -> float:
    a2 = alpha * alpha
    d = cos_h * cos_h * (a2 - 1.0) + 1.0
    return a2 / (wp.pi * d * d)


@wp.func
def smith_g1(cos_v: float, alpha: float) -> float:
    a2 = alpha * alpha
    return 2.0 * cos_v / (cos_v + wp.sqrt(a2 + (1.0 - a2) * cos_v * cos_v))


@wp.func
def schlick_fresnel(f0: wp.vec3f, cos_theta: float) -> wp.vec3f:
    c = wp.clamp(1.0 - cos_theta, 0.0, 1.0)
    c5 = c * c * c * c * c
    return f0 + (wp.vec3f(1.0, 1.0, 1.0) - f0) * c5


@wp.func
def roughness_to_alpha(roughness: float) -> float:
    return wp.max(roughness, 1e-3)


@wp.func
def bsdf(
    materials: Materials,
    material_id: int,
    shading_normal: wp.vec3f,
    geom_normal: wp.vec3f,
    wi: wp.vec3f,
    wo: wp.vec3f,
    min_roughness: float,
) -> wp.vec3f:
    """Lambertian plus GGX reflection, cosine of wo included.

    wi points towards the viewer, wo towards the light.
    """
    n = shading_normal
    # Flip the shading frame to the side of the viewer
    if wp.dot(geom_normal, wi) < 0.0:
        n = -n
    cos_i = wp.dot(n, wi)
    cos_o = wp.dot(n, wo)
    if cos_i <= 0.0 or cos_o <= 0.0:
        return wp.vec3f(0.0, 0.0, 0.0)
    # Light leaking through the geometric surface
    if wp.dot(geom_normal, wi) * wp.dot(geom_normal, wo) <= 0.0:
        return wp.vec3f(0.0, 0.0, 0.0)

    diffuse = get_diffuse_reflectance(materials, material_id) * (cos_o / wp.pi)

    alpha = roughness_to_alpha(wp.max(get_roughness(materials, material_id), min_roughness))
    h = wp.normalize(wi + wo)
    cos_h = wp.dot(n, h)
    D = ggx_distribution(cos_h, alpha)
    G = smith_g1(cos_i, alpha) * smith_g1(cos_o, alpha)
    F = schlick_fresnel(get_specular_reflectance(materials, material_id), wp.dot(h, wo))
    specular = F * (D * G / (4.0 * cos_i))
    return diffuse + specular


@dataclass
class TorchMaterials:
    diffuse_reflectance: torch.Tensor
    specular_reflectance: torch.Tensor
    roughness: torch.Tensor

    @classmethod
    def from_lists(cls, diffuse, specular, roughness, device="cpu"):
        diffuse = torch.as_tensor(diffuse, dtype=torch.float32).reshape(-1, 3)
        specular = torch.as_tensor(specular, dtype=torch.float32).reshape(-1, 3)
        roughness = torch.as_tensor(roughness, dtype=torch.float32).reshape(-1)
        if not (diffuse.shape[0] == specular.shape[0] == roughness.shape[0]):
            raise ValueError(
                "Material attribute counts differ: "
                f"{diffuse.shape[0]}, {specular.shape[0]}, {roughness.shape[0]}"
            )
        return cls(
            diffuse_reflectance=diffuse.contiguous().to(device),
            specular_reflectance=specular.contiguous().to(device),
            roughness=roughness.contiguous().to(device),
        )

    @property
    def num_materials(self) -> int:
        return self.roughness.shape[0]

    def to_warp(self) -> Materials:
        materials = Materials()
        materials.diffuse_reflectance = wp.from_torch(
            self.diffuse_reflectance, dtype=wp.vec3f
        )
        materials.specular_reflectance = wp.from_torch(
            self.specular_reflectance, dtype=wp.vec3f
        )
        materials.roughness = wp.from_torch(self.roughness)
        return materials
