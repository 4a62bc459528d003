#!/usr/bin/env python3
# coding: utf-8

"""
SynBOLD-DisCo
Synthetic BOLD images for distortion correction: make an undistorted BOLD
image from a T1 and a distorted BOLD image, then correct the BOLD with TOPUP.
"""
# Import standard libraries
from datetime import datetime

# Custom local imports
from synbold.errors import SynBOLDError
from synbold.get_args import get_params, resolve_resources
from synbold.logger import LOGGER

from synbold.prep_bold import run_prep_BOLD
from synbold.prep_t1 import run_prep_T1
from synbold.registration import run_registration
from synbold.ensemble import run_inference
from synbold.topup import run_distortion_correction
from synbold.tools import make_toolbox

from synbold.utilities import (
    exit_with_time_info,
    run_all_stages
)

STAGES = [run_prep_BOLD, run_prep_T1, run_registration, run_inference,
          run_distortion_correction]


def main(argv=None, tools=None):
    """
    :param argv: List of command-line argument strings; sys.argv[1:] if None
    :param tools: Toolbox to run every external tool with, or None to use
                  the real tools
    """
    start_time = datetime.now()  # Time how long the script takes
    try:
        # Get and validate command-line arguments and every required file
        j_args = resolve_resources(get_params(argv))
        if tools is None:
            tools = make_toolbox(j_args)
        j_args["tools"] = tools

        # Run every stage in order
        run_all_stages(STAGES, j_args)
    except SynBOLDError as e:
        LOGGER.error(f"{type(e).__name__}: {e}")
        exit_with_time_info(start_time, 1)
    except Exception:
        LOGGER.exception("Unexpected error")
        exit_with_time_info(start_time, 1)

    # Show user how long the pipeline took and end the pipeline here
    exit_with_time_info(start_time)


if __name__ == "__main__":
    main()
