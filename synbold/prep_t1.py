#!/usr/bin/env python3
# coding: utf-8

"""
Structural normalizer and mask provider: bias-correct the T1, rescale it so
its white matter has a fixed mean intensity, and make its brain mask.
"""
import os
import shutil

import nibabel as nib
import numpy as np

from synbold.errors import ComputationError
from synbold.logger import LOGGER

from synbold.utilities import (
    binarize,
    save_nifti
)

TARGET_WM_MEAN = 110
WM_THRESHOLD = 0.99


def run_prep_T1(j_args):
    """
    :param j_args: Dictionary containing all args
    :return: j_args, but with j_args[T1] mapping "T1_N3", "wm_mask", "T1_norm"
             and "T1_mask" to the stage's outputs
    """
    out_dir = j_args["common"]["output_dir"]
    tools = j_args["tools"]
    T1_in = j_args["inputs"]["T1"]
    outputs = {"T1_N3": os.path.join(out_dir, "T1_N3.nii.gz"),
               "wm_mask": os.path.join(out_dir, "fast_wm_mask.nii.gz"),
               "T1_norm": os.path.join(out_dir, "T1_norm.nii.gz"),
               "T1_mask": os.path.join(out_dir, "T1_mask.nii.gz")}

    if j_args["run"].bias_correction_enabled:
        LOGGER.info("Performing ANTs N4 bias correction")
        tools.bias_corrector.correct(T1_in, outputs["T1_N3"])
    else:
        LOGGER.info("Skipping bias correction; copying T1 as is.")
        shutil.copyfile(T1_in, outputs["T1_N3"])

    LOGGER.info("Performing FAST-based WM segmentation")
    wm_pve = tools.segmenter.segment(outputs["T1_N3"],
                                     os.path.join(out_dir, "fast"))
    LOGGER.info("Creating a (high-purity) WM mask by thresholding")
    binarize(wm_pve, outputs["wm_mask"], lower_threshold=WM_THRESHOLD)

    mean_val = masked_mean(outputs["T1_N3"], outputs["wm_mask"])
    LOGGER.info(f"Mean WM intensity: {mean_val}")
    scale_factor = rescale_to_target(outputs["T1_N3"], outputs["T1_norm"],
                                     mean_val, TARGET_WM_MEAN)
    LOGGER.info(f"Scaled entire T1 by factor {scale_factor}")

    make_brain_mask(T1_in, outputs["T1_N3"], outputs["T1_mask"],
                    j_args["run"].skull_stripped, tools.skull_stripper)

    j_args["T1"] = outputs
    return j_args


def make_brain_mask(T1_in, T1_N3, T1_mask, skull_stripped, skull_stripper):
    """
    :param T1_in: String, valid path to the user's T1 input file
    :param T1_N3: String, valid path to the bias-corrected T1
    :param T1_mask: String, valid path to the brain mask file to create
    :param skull_stripped: True if the user says T1_in is already skull-stripped
    :param skull_stripper: Object with strip(in_file, out_file) method
    :return: T1_mask
    """
    if skull_stripped:
        LOGGER.info("User indicated T1 is already skull-stripped; binarizing "
                    "it to make T1_mask")
        binarize(T1_in, T1_mask)
    else:
        LOGGER.info("Skull stripping T1 with BET")
        skull_stripper.strip(T1_N3, T1_mask)
    return T1_mask


def masked_mean(img_fpath, mask_fpath):
    """
    :param img_fpath: String, valid path to an existing 3D image file
    :param mask_fpath: String, valid path to a 0/1 mask on the same grid
    :return: Float, mean of img_fpath's nonzero voxels where the mask is
             nonzero, as fslstats -k mask -M computes it
    """
    data = nib.load(img_fpath).get_fdata()
    mask = nib.load(mask_fpath).get_fdata() != 0
    if mask.shape != data.shape:
        raise ComputationError("Mask {} has shape {} but image {} has shape {}"
                               .format(mask_fpath, mask.shape, img_fpath,
                                       data.shape))
    in_mask = data[mask & (data != 0)]
    if not in_mask.size:
        raise ComputationError("WM mask {} is empty, so the mean WM intensity "
                               "of {} is undefined".format(mask_fpath, img_fpath))
    return float(in_mask.mean())


def rescale_to_target(in_fpath, out_fpath, mean_val, target):
    """
    Multiply a whole image by target / mean_val
    :param in_fpath: String, valid path to an existing image file
    :param out_fpath: String, valid path to the rescaled image file to create
    :param mean_val: Float, the current reference intensity
    :param target: Number that mean_val should map to
    :return: Float, the scale factor used
    """
    if not np.isfinite(mean_val) or mean_val == 0:
        raise ComputationError(f"Cannot rescale {in_fpath} from a mean "
                               f"intensity of {mean_val}")
    scale_factor = target / mean_val
    img = nib.load(in_fpath)
    save_nifti(img.get_fdata() * scale_factor, img, out_fpath, np.float32)
    return scale_factor
