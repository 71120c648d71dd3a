import configargparse
import numpy as np
import tqdm

from configs import *
from edgediff.ltc import (
    LTC_SIZE,
    LTC_SPHERE_SIZE,
    fit_matrix_table,
    fit_sphere_table,
    save_ltc_tables,
)


def fit(args):
    tab_m = fit_matrix_table(
        LTC_SIZE,
        num_samples=args.num_samples,
        refine=args.refine,
        progress=lambda rids: tqdm.tqdm(rids, desc="Fitting LTC matrices"),
    )
    tab_sphere = fit_sphere_table(LTC_SPHERE_SIZE)
    if not np.all(np.isfinite(tab_m)):
        raise ValueError("LTC fit produced non-finite matrices")

    save_ltc_tables(args.output, tab_m, tab_sphere)
    print(f"Wrote {LTC_SIZE}x{LTC_SIZE} LTC tables to {args.output}")


if __name__ == "__main__":
    parser = configargparse.ArgParser()

    get_params = add_group(parser, LTCFitParams)

    # Add argument to specify a custom config file
    parser.add_argument(
        "-c", "--config", is_config_file=True, help="Path to config file"
    )

    # Parse arguments
    args = parser.parse_args()

    fit(get_params(args))
