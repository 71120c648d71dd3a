from collections.abc import Sequence
import dataclasses
from dataclasses import dataclass
import inspect
from typing import Optional, Union

import configargparse


def str_to_bool(v):
    if isinstance(v, bool):
        return v
    if v.lower() == "true":
        return True
    elif v.lower() == "false":
        return False
    else:
        raise configargparse.ArgumentTypeError("Boolean value expected. True or False.")


def add_group(parser: configargparse.ArgParser, group_class):
    fields = dict(inspect.getmembers(group_class))["__dataclass_fields__"]
    for name, field in fields.items():
        default = field.default
        if field.default_factory != dataclasses.MISSING:
            default = field.default_factory()
        required = default == dataclasses.MISSING
        t = field.type
        nargs = None
        if hasattr(t, "__origin__") and hasattr(t, "__args__"):
            origin = t.__origin__
            if origin is Union and len(t.__args__) == 2 and type(None) in t.__args__:
                for arg in t.__args__:
                    if arg != type(None):
                        t = arg
                        break
                if required:
                    default = None
                    required = False
            elif issubclass(origin, Sequence):
                t = t.__args__[0]
                nargs = "+"
            else:
                raise ValueError(f"Unsupported type {t} for field {name}")

        if required and t == bool:
            parser.add_argument(
                f"--{name}", type=str_to_bool, nargs="?", const=True, required=True
            )
        elif required:
            parser.add_argument(f"--{name}", nargs=nargs, type=t, required=True)
        elif t == bool and default == False:
            parser.add_argument(f"--{name}", action="store_true")
        elif t == bool:
            # Switches that default to on take an explicit value, --flag false
            parser.add_argument(
                f"--{name}", type=str_to_bool, nargs="?", const=True, default=True
            )
        else:
            parser.add_argument(f"--{name}", nargs=nargs, type=t, default=default)

    def extract(args):
        kwargs = {}
        for arg in vars(args).items():
            if arg[0] in fields:
                kwargs[arg[0]] = arg[1]
        return group_class(**kwargs)

    return extract


@dataclass(kw_only=True)
class EdgeSamplingParams:
    # Execution parameters
    use_gpu: bool = False

    # Secondary edge selection
    use_edge_tree: bool = True
    ltc_table: Optional[str] = None
    diffuse_roughness_threshold: float = 1e-2

    # Ray offsets, relative to the edge distance
    primary_ray_offset: float = 1e-6
    secondary_ray_offset: float = 1e-5

    # Post-intersection consistency check of primary samples
    enable_primary_edge_correction: bool = False


@dataclass(kw_only=True)
class GradientCheckParams:
    # Scene parameters
    mesh: Optional[str] = None
    width: int = 64
    height: int = 64
    fov: float = 45.0
    fisheye: bool = False
    camera_position: list[float] = dataclasses.field(
        default_factory=lambda: [0.0, 0.0, 0.0]
    )
    translation: list[float] = dataclasses.field(
        default_factory=lambda: [0.0, 0.0, 2.0]
    )

    # Estimator parameters
    num_samples: int = 200000
    batch_size: int = 50000
    fd_step: float = 1e-2
    fd_resolution: int = 1024
    seed: int = 0

    # Output
    output_image: Optional[str] = None
    colormap: str = "coolwarm"


@dataclass(kw_only=True)
class LTCFitParams:
    output: str = "ltc_tables.npz"
    refine: bool = False
    num_samples: int = 64
