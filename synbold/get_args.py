import argparse
from dataclasses import dataclass
from glob import glob
import logging
import os
import sys

from synbold.errors import ConfigurationError
from synbold.logger import LOGGER, VERBOSE_LEVEL_NUM, add_log_file

from synbold.validate import (
    valid_output_dir,
    valid_positive_float,
    valid_readable_dir,
    valid_whole_number
)

from synbold.utilities import get_sidecar_path

from synbold.registration import select_atlas_references
from synbold.ensemble import NUM_FOLDS, find_fold_weights
from synbold.topup import TOPUP_PRESETS

HELP_FLAGS = ("-h", "--help")


@dataclass(frozen=True)
class RunConfiguration:
    """
    Every user-controllable choice for one run. Built once by get_params and
    never changed afterwards.
    """
    topup_enabled: bool = True
    motion_corrected: bool = False
    skull_stripped: bool = False
    custom_config: bool = False
    no_smoothing: bool = False
    bias_correction_enabled: bool = True
    total_readout_time: float = 0.05
    T1_file: str = "T1.nii.gz"
    BOLD_file: str = "BOLD_d.nii.gz"


class PipelineArgumentParser(argparse.ArgumentParser):
    """ argparse.ArgumentParser that raises instead of exiting with status 2 """
    def error(self, message):
        if message.endswith("expected one argument"):
            message = "Missing value for " + message
        raise ConfigurationError(message)


def make_parser():
    """
    :return: PipelineArgumentParser accepting every SynBOLD-DisCo flag
    """
    defaults = RunConfiguration()
    default_inputs_dir = "/INPUTS"
    default_outputs_dir = "/OUTPUTS"
    default_atlas_dir = "/home"
    default_topup_cnf_dir = "/opt/fsl/src/fsl-topup/flirtsch"

    parser = PipelineArgumentParser("SynBOLD-DisCo", allow_abbrev=False)

    # Processing flags
    parser.add_argument(
        "-nt", "--no_topup", dest="topup_enabled", action="store_false",
        help="Disable TOPUP distortion correction."
    )
    parser.add_argument(
        "-mc", "--motion_corrected", action="store_true",
        help="Indicate that the BOLD file is already motion-corrected."
    )
    parser.add_argument(
        "-ss", "--skull_stripped", action="store_true",
        help="Indicate that the T1 file is already skull-stripped."
    )
    parser.add_argument(
        "--custom_cnf", dest="custom_config", action="store_true",
        help=("Indicate that a custom .cnf file is present in the inputs "
              "directory (exactly 1 .cnf).")
    )
    parser.add_argument(
        "--no_smoothing", action="store_true",
        help="Disable smoothing of the distorted BOLD before TOPUP."
    )
    parser.add_argument(
        "--no_bias_correction", dest="bias_correction_enabled",
        action="store_false",
        help="Skip the N4BiasFieldCorrection (bias correction) of the T1."
    )
    parser.add_argument(
        "--total_readout_time", type=valid_positive_float,
        default=defaults.total_readout_time,
        help=("Total readout time written into acqparams.txt. Default: {}"
              .format(defaults.total_readout_time))
    )
    parser.add_argument(
        "--T1", dest="T1_file", default=defaults.T1_file,
        help=("T1 file name in the inputs directory. Default: {}"
              .format(defaults.T1_file))
    )
    parser.add_argument(
        "--BOLD", dest="BOLD_file", default=defaults.BOLD_file,
        help=("BOLD file name in the inputs directory. Its JSON sidecar must "
              "sit next to it. Default: {}".format(defaults.BOLD_file))
    )

    # Container paths
    parser.add_argument(
        "--inputs-dir", dest="inputs_dir", type=valid_readable_dir,
        default=default_inputs_dir,
        help=("Valid path to existing directory with the T1, BOLD, BOLD "
              "sidecar and (optionally) a .cnf file. Default: {}"
              .format(default_inputs_dir))
    )
    parser.add_argument(
        "--outputs-dir", dest="outputs_dir", type=valid_output_dir,
        default=default_outputs_dir,
        help=("Valid path to directory to save every output into. It is "
              "created if it does not exist. Default: {}"
              .format(default_outputs_dir))
    )
    parser.add_argument(
        "--atlas-dir", dest="atlas_dir", default=default_atlas_dir,
        help=("Directory containing the MNI ICBM152 2009c reference images. "
              "Default: {}".format(default_atlas_dir))
    )
    parser.add_argument(
        "--models-dir", dest="models_dir",
        default=os.path.join(default_atlas_dir, "Models"),
        help="Directory containing the trained weights of every fold."
    )
    parser.add_argument(
        "--inference-script", dest="inference_script",
        default=os.path.join(default_atlas_dir, "inference.py"),
        help="Path to the script that runs the model on one fold."
    )
    parser.add_argument(
        "--python", default="python3",
        help="Python interpreter used to run --inference-script."
    )
    parser.add_argument(
        "--topup-cnf-dir", dest="topup_cnf_dir", default=default_topup_cnf_dir,
        help=("Directory with FSL's built-in TOPUP configuration files. "
              "Default: {}".format(default_topup_cnf_dir))
    )
    parser.add_argument(
        "--nthreads", type=valid_whole_number, default=os.cpu_count() or 1,
        help=("Number of threads given to TOPUP and the number of folds to "
              "run at once. Defaults to the number of CPUs.")
    )

    # Add mutually exclusive group for setting log level
    log_level = parser.add_mutually_exclusive_group()
    log_level.add_argument(
        "-v", "--verbose", action="store_true",
        help=("Include this flag to print detailed information and every "
              "command being run to stdout.")
    )
    log_level.add_argument(
        "-d", "--debug", action="store_true",
        help=("Include this flag to print highly detailed information, "
              "including inference script output, to stdout.")
    )
    return parser


def get_params(argv=None):
    """
    :param argv: List of command-line argument strings; sys.argv[1:] if None
    :return: Dictionary containing all validated parameters (j_args)
    """
    argv = sys.argv[1:] if argv is None else list(argv)
    parser = make_parser()

    # Asking for help anywhere (or giving no arguments) overrides everything
    if not argv or any(arg in HELP_FLAGS for arg in argv):
        parser.print_help()
        sys.exit(0)

    cli_args, unknown_args = parser.parse_known_args(argv)
    return validate_cli_args(vars(cli_args), argv, unknown_args)


def validate_cli_args(cli_args, argv, unknown_args):
    """
    :param cli_args: Dictionary containing all command-line input arguments
    :param argv: List of every raw command-line argument string
    :param unknown_args: List of argument strings that no flag recognized
    :return: Dictionary of validated parameters
    """
    # Set LOGGER level
    if cli_args["verbose"]:
        LOGGER.setLevel(VERBOSE_LEVEL_NUM)
    elif cli_args["debug"]:
        LOGGER.setLevel(logging.DEBUG)
    else:
        LOGGER.setLevel(logging.INFO)

    # Everything from here on is also saved in the output directory
    add_log_file(os.path.join(cli_args["outputs_dir"], "output.log"))
    LOGGER.info("Flag(s) received:\n{}".format(
        "\n".join("  " + arg for arg in argv)
    ))
    if unknown_args:
        LOGGER.debug("Ignoring unrecognized argument(s): {}"
                     .format(" ".join(unknown_args)))

    run_config = RunConfiguration(**{
        field: cli_args[field] for field in RunConfiguration.__dataclass_fields__
    })
    log_run_configuration(run_config)

    # Check existence of input files
    inputs_dir = cli_args["inputs_dir"]
    inputs = dict()
    for name in ("T1", "BOLD"):
        inputs[name] = os.path.join(inputs_dir, getattr(run_config, name + "_file"))
        if not os.path.isfile(inputs[name]):
            raise ConfigurationError("{} file '{}' not found in {}".format(
                name, getattr(run_config, name + "_file"), inputs_dir
            ))

    # If using a custom .cnf file, check that exactly one exists
    cnf_files = sorted(glob(os.path.join(inputs_dir, "*.cnf")))
    if run_config.custom_config:
        if len(cnf_files) != 1:
            raise ConfigurationError("Expected 1 .cnf file in {}, found {}."
                                     .format(inputs_dir, len(cnf_files)))
        inputs["cnf"] = cnf_files[0]
    else:
        inputs["cnf"] = None
        if cnf_files:
            LOGGER.warning("Ignoring {} .cnf file(s) in {} because --custom_cnf "
                           "was not given:\n{}".format(
                               len(cnf_files), inputs_dir, "\n".join(cnf_files)
                           ))

    # Determine the JSON sidecar for the BOLD
    inputs["BOLD_json"] = get_sidecar_path(inputs["BOLD"])
    if not os.path.isfile(inputs["BOLD_json"]):
        raise ConfigurationError("JSON sidecar '{}' not found in {}".format(
            os.path.basename(inputs["BOLD_json"]), inputs_dir
        ))

    j_args = {
        "common": {
            "inputs_dir": inputs_dir,
            "output_dir": cli_args["outputs_dir"],
            "n_threads": cli_args["nthreads"],
            "verbose": cli_args["verbose"] or cli_args["debug"]
        },
        "run": run_config,
        "inputs": inputs,
        "resources": {
            "atlas_dir": os.path.abspath(cli_args["atlas_dir"]),
            "models_dir": os.path.abspath(cli_args["models_dir"]),
            "inference_script": os.path.abspath(cli_args["inference_script"]),
            "python": cli_args["python"],
            "topup_cnf_dir": os.path.abspath(cli_args["topup_cnf_dir"])
        }
    }
    LOGGER.debug(f"j_args: {j_args}")
    return j_args


def log_run_configuration(run_config):
    """
    :param run_config: RunConfiguration to show the user
    """
    LOGGER.info("Flags for this run:\n" + "\n".join("  {}: {}".format(*each) for each in (
        ("TOPUP", run_config.topup_enabled),
        ("Motion Corrected", run_config.motion_corrected),
        ("Skull Stripped", run_config.skull_stripped),
        ("Custom Cnf", run_config.custom_config),
        ("No Smoothing", run_config.no_smoothing),
        ("Skip Bias Correction", not run_config.bias_correction_enabled),
        ("Total Readout Time", run_config.total_readout_time),
        ("T1 file", run_config.T1_file),
        ("BOLD file", run_config.BOLD_file)
    )))


def resolve_resources(j_args):
    """
    Find every file the pipeline needs besides the subject's own data, so a
    missing atlas/model/config crashes the run before any image is processed
    :param j_args: Dictionary containing all args
    :return: j_args, but with j_args[resources] completed
    """
    resources = j_args["resources"]
    missing = list()

    resources["atlas"], resources["atlas_2_5"] = select_atlas_references(
        resources["atlas_dir"], j_args["run"].skull_stripped
    )
    for required in (resources["atlas"], resources["atlas_2_5"],
                     resources["inference_script"]):
        if not os.path.isfile(required):
            missing.append(required)

    resources["fold_weights"] = dict()
    for fold in range(1, NUM_FOLDS + 1):
        resources["fold_weights"][fold] = find_fold_weights(
            resources["models_dir"], fold
        )

    if j_args["run"].topup_enabled and not j_args["run"].custom_config:
        for preset in TOPUP_PRESETS.values():
            preset_path = os.path.join(resources["topup_cnf_dir"], preset)
            if not os.path.isfile(preset_path):
                missing.append(preset_path)

    if missing:
        raise ConfigurationError("The file(s) below are needed to run the "
                                 "pipeline, but they do not exist.\n{}"
                                 .format("\n".join(missing)))
    LOGGER.info("All required input files exist.")
    LOGGER.verbose(f"Resources: {resources}")
    return j_args
