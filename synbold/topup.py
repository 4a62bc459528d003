#!/usr/bin/env python3
# coding: utf-8

"""
Distortion corrector: pair the distorted BOLD mean with the model's
undistorted prediction and, unless disabled, correct the BOLD with TOPUP.
"""
import os
import shutil

import nibabel as nib

from synbold.errors import ValidationError
from synbold.logger import LOGGER
from synbold.prep_bold import format_vector

from synbold.utilities import (
    get_ndim,
    mean_over_time,
    merge_volumes
)

# Built-in TOPUP configuration for BOLD grids with all-even or any-odd sizes
TOPUP_PRESETS = {"even": "b02b0_2.cnf", "odd": "b02b0_1.cnf"}
SMOOTHING_SIGMA = 1.15


def has_all_even_dims(img_fpath):
    """
    :param img_fpath: String, valid path to an existing image file
    :return: True if all 3 spatial dimensions of the image are even
    """
    for dim_size in nib.load(img_fpath).shape[:3]:
        if dim_size % 2 == 1:
            LOGGER.info("Odd dimension detected")
            return False
    return True


def make_BOLD_all(BOLD_d_3D, BOLD_s_3D, out_dir, smooth, smoother):
    """
    :param BOLD_d_3D: String, valid path to the distorted BOLD mean
    :param BOLD_s_3D: String, valid path to the predicted undistorted BOLD
    :param out_dir: String, valid path to existing directory to save into
    :param smooth: True to smooth BOLD_d_3D before pairing it
    :param smoother: Object with smooth(in_file, sigma, out_file) method
    :return: Dictionary mapping "BOLD_all" (and "BOLD_d_3D_smoothed" if it
             was made) to its path
    """
    outputs = {"BOLD_all": os.path.join(out_dir, "BOLD_all.nii.gz")}
    distorted = BOLD_d_3D
    if smooth:
        LOGGER.info("Slight smoothing of distorted BOLD")
        distorted = os.path.join(out_dir, "BOLD_d_3D_smoothed.nii.gz")
        smoother.smooth(BOLD_d_3D, SMOOTHING_SIGMA, distorted)
        outputs["BOLD_d_3D_smoothed"] = distorted
    merge_volumes([distorted, BOLD_s_3D], outputs["BOLD_all"])
    return outputs


def reduce_corrected_BOLD(BOLD_u, BOLD_u_3D):
    """
    :param BOLD_u: String, valid path to the distortion-corrected BOLD
    :param BOLD_u_3D: String, valid path to the 3D image file to create
    :return: BOLD_u_3D
    """
    dimension = get_ndim(BOLD_u)
    LOGGER.info(f"BOLD_u.nii.gz dimension: {dimension}")
    if dimension == 4:
        mean_over_time(BOLD_u, BOLD_u_3D)
    elif dimension == 3:
        shutil.copyfile(BOLD_u, BOLD_u_3D)
    else:
        raise ValidationError("BOLD_u.nii.gz has an unexpected dimension ({}, "
                              "not 3D or 4D)".format(dimension))
    return BOLD_u_3D


def run_distortion_correction(j_args):
    """
    :param j_args: Dictionary containing all args
    :return: j_args, but with j_args[topup] mapping every output to its path
    """
    out_dir = j_args["common"]["output_dir"]
    run_config = j_args["run"]
    tools = j_args["tools"]
    BOLD = j_args["BOLD"]

    outputs = make_BOLD_all(BOLD["BOLD_d_3D"],
                            j_args["inference"]["BOLD_s_3D"], out_dir,
                            not run_config.no_smoothing, tools.smoother)
    if not run_config.topup_enabled:
        LOGGER.info("Skipping TOPUP distortion correction")
        j_args["topup"] = outputs
        return j_args

    outputs.update({
        "acqparams": os.path.join(out_dir, "acqparams.txt"),
        "topup_base": os.path.join(out_dir, "topup_results"),
        "field": os.path.join(out_dir, "topup_results_field.nii.gz"),
        "BOLD_all_topup": os.path.join(out_dir, "BOLD_all_topup.nii.gz"),
        "BOLD_u": os.path.join(out_dir, "BOLD_u.nii.gz"),
        "BOLD_u_3D": os.path.join(out_dir, "BOLD_u_3D.nii.gz")
    })
    LOGGER.info("Creating acqparams.txt using vector: {}"
                .format(format_vector(BOLD["phase_vector"])))
    write_acqparams(outputs["acqparams"], BOLD["phase_vector"],
                    run_config.total_readout_time)

    outputs["cnf"] = select_topup_config(
        j_args["inputs"]["cnf"] if run_config.custom_config else None,
        BOLD["BOLD_d"], j_args["resources"]["topup_cnf_dir"], out_dir
    )
    LOGGER.info(f"TOPUP configuration: {outputs['cnf']}")

    outputs["fieldcoef"], outputs["movpar"] = tools.distortion_estimator.estimate(
        outputs["BOLD_all"], outputs["acqparams"], outputs["cnf"],
        outputs["topup_base"], outputs["field"], outputs["BOLD_all_topup"],
        j_args["common"]["n_threads"]
    )
    tools.distortion_estimator.apply(
        BOLD["BOLD_d_mc"], outputs["acqparams"], outputs["fieldcoef"],
        outputs["movpar"], outputs["BOLD_u"]
    )
    reduce_corrected_BOLD(outputs["BOLD_u"], outputs["BOLD_u_3D"])

    j_args["topup"] = outputs
    return j_args


def select_topup_config(custom_cnf, BOLD_d, topup_cnf_dir, out_dir):
    """
    Copy the TOPUP configuration file to use into out_dir
    :param custom_cnf: String, path to the user's .cnf file, or None to pick
                       a built-in preset by the BOLD grid's parity
    :param BOLD_d: String, valid path to the BOLD working copy
    :param topup_cnf_dir: String, path to directory with the built-in presets
    :param out_dir: String, valid path to existing directory to copy into
    :return: String, path to the copied configuration file
    """
    if custom_cnf:
        cnf = custom_cnf
    else:
        cnf = os.path.join(topup_cnf_dir, TOPUP_PRESETS[
            "even" if has_all_even_dims(BOLD_d) else "odd"
        ])
    copied = os.path.join(out_dir, os.path.basename(cnf))
    shutil.copyfile(cnf, copied)
    return copied


def write_acqparams(acqparams_fpath, phase_vector, total_readout_time):
    """
    Write the two TOPUP acquisition rows: the distorted BOLD with its readout
    time, then the undistorted prediction with a readout time of 0
    :param acqparams_fpath: String, valid path to the text file to create
    :param phase_vector: Tuple of 3 ints, the phase-encoding vector
    :param total_readout_time: Float
    :return: acqparams_fpath
    """
    vector = format_vector(phase_vector)
    with open(acqparams_fpath, "w") as outfile:
        outfile.write(f"{vector} {total_readout_time}\n{vector} 0\n")
    return acqparams_fpath
