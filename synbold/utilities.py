#!/usr/bin/env python3
# coding: utf-8

"""
Common source for utility functions used by SynBOLD-DisCo.
Contains functions used by multiple stages, only used in run.py, or called by
other utility functions.
"""
# Import standard libraries
from datetime import datetime
import os
import subprocess
import sys

import nibabel as nib
import numpy as np

from synbold.errors import ComputationError, ValidationError
from synbold.logger import LOGGER


# NOTE All functions below are in alphabetical order.

def binarize(in_fpath, out_fpath, lower_threshold=None):
    """
    Save a 0/1 mask of every voxel that is nonzero, or, if lower_threshold is
    given, of every voxel whose value is at least lower_threshold
    :param in_fpath: String, valid path to an existing image file
    :param out_fpath: String, valid path to the mask image file to create
    :param lower_threshold: Float (inclusive) or None
    :return: numpy.ndarray of bools, the mask that was saved
    """
    img = nib.load(in_fpath)
    data = img.get_fdata()
    mask = (data != 0) if lower_threshold is None else (data >= lower_threshold)
    save_nifti(mask.astype(np.uint8), img, out_fpath)
    return mask


def exit_with_time_info(start_time, exit_code=0):
    """
    Terminate the pipeline after displaying a message showing how long it ran
    :param start_time: datetime.datetime object of when the script started
    :param exit_code: exit code
    """
    LOGGER.info("The pipeline took this long to run {}: {}".format(
        "successfully" if exit_code == 0 else "and then crashed",
        datetime.now() - start_time
    ))
    sys.exit(exit_code)


def get_ndim(img_fpath):
    """
    :param img_fpath: String, valid path to an existing image file
    :return: Int, the number of dimensions in the image's data matrix
    """
    return len(nib.load(img_fpath).shape)


def get_sidecar_path(nifti_fpath):
    """
    :param nifti_fpath: String, path to a .nii or .nii.gz image file
    :return: String, path to the BIDS JSON sidecar of that image file
    """
    for ext in (".nii.gz", ".nii"):
        if nifti_fpath.endswith(ext):
            return nifti_fpath[:-len(ext)] + ".json"
    return os.path.splitext(nifti_fpath)[0] + ".json"


def get_stage_name(stage_fn):
    """
    :param stage_fn: Function to run one stage of the pipeline. Its name must
                     start with "run_", e.g. "run_prep_BOLD"
    :return: String naming the stage to run
    """
    return stage_fn.__name__[4:].lower()


def log_stage_finished(stage_name, event_time):
    """
    Log how much time has passed since a stage started
    :param stage_name: String, name of event that just finished
    :param event_time: datetime object representing when {stage_name} started
    """
    LOGGER.info("{0} finished. Time elapsed since {0} started: {1}"
                .format(stage_name, datetime.now() - event_time))


def mean_over_time(in_fpath, out_fpath):
    """
    Average a 4D image across its 4th (time) axis
    :param in_fpath: String, valid path to an existing 4D image file
    :param out_fpath: String, valid path to the 3D mean image file to create
    :return: out_fpath
    """
    img = nib.load(in_fpath)
    if len(img.shape) != 4:
        raise ValidationError("Cannot take the temporal mean of {}: it has {} "
                              "dimensions, not 4".format(in_fpath, len(img.shape)))
    save_nifti(img.get_fdata().mean(axis=3), img, out_fpath, np.float32)
    return out_fpath


def merge_volumes(in_fpaths, out_fpath):
    """
    Stack images along the 4th (time) axis in the order given
    :param in_fpaths: List of strings, valid paths to existing 3D/4D images
                      that all share one spatial grid
    :param out_fpath: String, valid path to the 4D image file to create
    :return: numpy.ndarray, the merged data matrix
    """
    first_img = nib.load(in_fpaths[0])
    frames = list()
    for in_fpath in in_fpaths:
        data = nib.load(in_fpath).get_fdata()
        if data.shape[:3] != first_img.shape[:3]:
            raise ValidationError("Cannot merge {} with shape {} into images "
                                  "with shape {}".format(in_fpath, data.shape,
                                                         first_img.shape))
        frames.append(data if data.ndim == 4 else data[..., np.newaxis])
    merged = np.concatenate(frames, axis=3)
    save_nifti(merged, first_img, out_fpath, np.float32)
    return merged


def run_all_stages(all_stages, j_args):
    """
    Run stages sequentially; each one's outputs are the next one's inputs
    :param all_stages: List of functions in order where each runs one stage
    :param j_args: Dictionary of all args needed by each stage
    :return: j_args, with every stage's outputs added
    """
    for stage in all_stages:
        name = get_stage_name(stage)
        stage_start = datetime.now()
        LOGGER.info("-------\nNow running {} stage".format(name))
        j_args = stage(j_args)
        log_stage_finished(name, stage_start)
    return j_args


def run_subprocess(to_run, log_id):
    """
    Run a command in a subprocess and forward everything it prints to the log
    :param to_run: List of strings, the command and its arguments
    :param log_id: String labelling this command's lines in the log
    :raises ComputationError: If the command fails or cannot be started
    """
    to_run = [str(arg) for arg in to_run]
    LOGGER.verbose("Now running command:\n{}".format(" ".join(to_run)))
    try:
        completed = subprocess.run(to_run, stdout=subprocess.PIPE,
                                   stderr=subprocess.STDOUT, text=True,
                                   errors="replace")
    except OSError as e:
        raise ComputationError("Could not run {}: {}".format(to_run[0], e)) from e

    for line in completed.stdout.splitlines():
        LOGGER.subprocess(line, extra={"id": log_id})
    if completed.returncode != 0:
        raise ComputationError("{} exited with status {}:\n{}".format(
            log_id, completed.returncode, " ".join(to_run)
        ))


def save_nifti(data, template_img, file_path, dtype=None):
    """
    :param data: numpy.ndarray to save
    :param template_img: nibabel image whose affine and header to reuse
    :param file_path: String, valid path to the image file to create
    :param dtype: numpy dtype to store data as, or None to keep data's dtype
    """
    img = template_img.__class__(data, template_img.affine,
                                 template_img.header.copy())
    img.set_data_dtype(data.dtype if dtype is None else dtype)
    nib.save(img, file_path)
