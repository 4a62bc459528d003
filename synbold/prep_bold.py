#!/usr/bin/env python3
# coding: utf-8

"""
Input normalizer: reduce the BOLD input to a motion-corrected series and a
3D mean, whatever its dimensionality.
"""
import json
import os
import shutil

import nibabel as nib
import numpy as np

from synbold.errors import ConfigurationError, ValidationError
from synbold.logger import LOGGER

from synbold.utilities import (
    get_ndim,
    mean_over_time
)

# BIDS PhaseEncodingDirection -> acqparams vector
PHASE_ENCODING_VECTORS = {"i":  (1, 0, 0),
                          "i-": (-1, 0, 0),
                          "j":  (0, 1, 0),
                          "j-": (0, -1, 0),
                          "k":  (0, 0, 1),
                          "k-": (0, 0, -1)}


def run_prep_BOLD(j_args):
    """
    :param j_args: Dictionary containing all args
    :return: j_args, but with j_args[BOLD] mapping "BOLD_d", "BOLD_d_mc",
             "BOLD_d_3D" and "phase_vector" to the stage's outputs
    """
    out_dir = j_args["common"]["output_dir"]
    outputs = {name: os.path.join(out_dir, f"{name}.nii.gz")
               for name in ("BOLD_d", "BOLD_d_mc", "BOLD_d_3D")}

    # Copy BOLD to the output dir; every later step reads only the copy
    shutil.copyfile(j_args["inputs"]["BOLD"], outputs["BOLD_d"])

    phase = read_phase_encoding_direction(j_args["inputs"]["BOLD_json"])
    LOGGER.info(f"Extracted PhaseEncodingDirection: {phase}")
    outputs["phase_vector"] = get_phase_encoding_vector(phase)
    LOGGER.info("Computed acqparams vector: {}"
                .format(format_vector(outputs["phase_vector"])))

    if clear_redundant_qform(outputs["BOLD_d"]):
        LOGGER.info("sform and qform codes were both 1; set qform code of "
                    "{} to 0".format(outputs["BOLD_d"]))

    make_BOLD_mc_and_mean(outputs["BOLD_d"], outputs["BOLD_d_mc"],
                          outputs["BOLD_d_3D"], j_args["run"].motion_corrected,
                          j_args["tools"].motion_corrector)

    j_args["BOLD"] = outputs
    return j_args


def clear_redundant_qform(img_fpath):
    """
    If the image's sform and qform codes are both 1, set the qform code to 0
    so downstream tools only read the sform. Changes the file in place.
    :param img_fpath: String, valid path to an existing NIfTI image file
    :return: True if the qform code was cleared, else False
    """
    img = nib.load(img_fpath)
    if not (int(img.header["sform_code"]) == 1
            and int(img.header["qform_code"]) == 1):
        return False

    # Read the data into memory before overwriting the file it came from
    fixed = img.__class__(np.asanyarray(img.dataobj),
                          img.affine, img.header.copy())
    fixed.header["qform_code"] = 0
    nib.save(fixed, img_fpath)
    return True


def format_vector(vector):
    """
    :param vector: Tuple of 3 ints
    :return: String, the vector as written into acqparams.txt, e.g. "0 -1 0"
    """
    return " ".join(str(axis) for axis in vector)


def get_phase_encoding_vector(phase):
    """
    :param phase: String, BIDS PhaseEncodingDirection (i, i-, j, j-, k or k-)
    :return: Tuple of 3 ints, the signed unit vector along that axis
    """
    try:
        return PHASE_ENCODING_VECTORS[phase]
    except (KeyError, TypeError):
        raise ValidationError(f"Unrecognized PhaseEncodingDirection '{phase}'")


def make_BOLD_mc_and_mean(BOLD_d, BOLD_d_mc, BOLD_d_3D, motion_corrected,
                          motion_corrector):
    """
    Make the motion-corrected BOLD series and its 3D mean. Exactly one of the
    3D, 4D-already-corrected, and 4D-needs-correction paths runs.
    :param BOLD_d: String, valid path to the BOLD working copy
    :param BOLD_d_mc: String, valid path to motion-corrected image to create
    :param BOLD_d_3D: String, valid path to 3D mean image to create
    :param motion_corrected: True if the user says BOLD_d is motion-corrected
    :param motion_corrector: Object with realign(in_file, out_file) method
                             returning the realigned series and mean paths
    """
    dimension = get_ndim(BOLD_d)
    LOGGER.info(f"BOLD dimension: {dimension}")
    if dimension == 3:
        shutil.copyfile(BOLD_d, BOLD_d_mc)
        shutil.copyfile(BOLD_d_mc, BOLD_d_3D)
    elif dimension == 4:
        if motion_corrected:
            LOGGER.info("BOLD is already motion-corrected; taking its mean")
            shutil.copyfile(BOLD_d, BOLD_d_mc)
            mean_over_time(BOLD_d_mc, BOLD_d_3D)
        else:
            LOGGER.info("Motion-correcting BOLD with MCFLIRT")
            realigned, mean_img = motion_corrector.realign(
                BOLD_d, os.path.join(os.path.dirname(BOLD_d_mc), "rBOLD.nii.gz")
            )
            shutil.move(realigned, BOLD_d_mc)
            shutil.move(mean_img, BOLD_d_3D)
    else:
        raise ValidationError("{} has an unexpected dimension ({}, not 3D or "
                              "4D).".format(os.path.basename(BOLD_d), dimension))


def read_phase_encoding_direction(sidecar_fpath):
    """
    :param sidecar_fpath: String, valid path to an existing BOLD JSON sidecar
    :return: String, the sidecar's PhaseEncodingDirection value
    """
    try:
        with open(sidecar_fpath) as infile:
            sidecar = json.load(infile)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Cannot parse JSON sidecar {sidecar_fpath}: {e}")

    phase = sidecar.get("PhaseEncodingDirection") if isinstance(sidecar, dict) else None
    if phase is None or phase == "":
        raise ConfigurationError(
            f"PhaseEncodingDirection not found in {sidecar_fpath}"
        )
    return phase
