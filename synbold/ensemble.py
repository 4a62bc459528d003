#!/usr/bin/env python3
# coding: utf-8

"""
Ensemble inference driver: run the trained model once per fold in atlas
space, average the folds, and bring the average back to functional space.
"""
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from glob import glob, escape
import os
import threading

import nibabel as nib
import numpy as np

from synbold.errors import (
    ComputationError,
    ConfigurationError,
    ValidationError
)
from synbold.logger import LOGGER
from synbold.utilities import save_nifti

NUM_FOLDS = 5
WEIGHTS_PATTERN = ("num_fold_{}_total_folds_5_seed_1_num_epochs_120_lr_0.0001"
                   "_betas_(0.9, 0.999)_weight_decay_1e-05_num_epoch_*.pth")


@dataclass(frozen=True)
class FoldResult:
    """ One fold's predicted volume in atlas space """
    fold: int
    path: str


def average_folds(fold_results, merged_fpath, out_fpath):
    """
    Stack fold predictions in fold-index order and take their voxelwise mean.
    The result does not depend on the order fold_results are given in.
    :param fold_results: Iterable of FoldResults, one per fold
    :param merged_fpath: String, valid path to the 4D stack image to create
    :param out_fpath: String, valid path to the 3D mean image to create
    :return: out_fpath
    """
    fold_results = sorted(fold_results, key=lambda result: result.fold)
    folds = [result.fold for result in fold_results]
    if len(set(folds)) != len(folds) or not folds:
        raise ValidationError(f"Cannot average folds {folds}")

    first_img = nib.load(fold_results[0].path)
    stacked = list()
    for result in fold_results:
        data = nib.load(result.path).get_fdata()
        if data.shape != first_img.shape[:3]:
            raise ValidationError("Fold {} prediction {} has shape {}, not {}"
                                  .format(result.fold, result.path,
                                          data.shape, first_img.shape[:3]))
        stacked.append(data)
    stacked = np.stack(stacked, axis=3)
    save_nifti(stacked, first_img, merged_fpath, np.float32)
    save_nifti(stacked.mean(axis=3), first_img, out_fpath, np.float32)
    return out_fpath


def find_fold_weights(models_dir, fold):
    """
    :param models_dir: String, path to directory with every fold's weights
    :param fold: Int, fold index from 1 to NUM_FOLDS
    :return: String, path to the only weights file for that fold
    """
    matches = glob(os.path.join(escape(models_dir),
                                WEIGHTS_PATTERN.format(fold)))
    if len(matches) != 1:
        raise ConfigurationError("Expected 1 weights file for fold {} in {}, "
                                 "found {}: {}".format(fold, models_dir,
                                                       len(matches), matches))
    return matches[0]


def run_fold(predictor, stop, T1_atlas, BOLD_atlas, weights, result):
    """
    Predict one fold unless another fold has already failed
    :param stop: threading.Event set once any fold fails
    :param result: FoldResult naming the fold and the file to create
    :return: result, or None if the fold was skipped
    """
    if stop.is_set():
        LOGGER.verbose(f"Skipping FOLD {result.fold} after an earlier failure")
        return None
    try:
        predictor.predict(T1_atlas, BOLD_atlas, weights, result.path,
                          f"FOLD_{result.fold}")
    except Exception:
        stop.set()
        raise
    return result


def run_folds(predictor, T1_atlas, BOLD_atlas, fold_weights, out_dir, n_threads):
    """
    Run every fold's prediction at once, up to n_threads at a time, and wait
    for all of them. The first fold to fail raises its error here, and folds
    that have not started yet are never run.
    :param predictor: Object with predict(t1, bold, weights, out_file, tag)
    :param T1_atlas: String, valid path to the atlas-space normalized T1
    :param BOLD_atlas: String, valid path to the atlas-space BOLD mean
    :param fold_weights: Dictionary mapping fold index to its weights file
    :param out_dir: String, valid path to existing directory to save into
    :param n_threads: Int, maximum number of folds to run concurrently
    :return: Dictionary mapping fold index to its FoldResult
    """
    fold_results = dict()
    n_workers = max(1, min(n_threads, len(fold_weights)))
    stop = threading.Event()
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        futures = list()
        for fold, weights in sorted(fold_weights.items()):
            LOGGER.info(f"Performing inference on FOLD: {fold}")
            out_file = os.path.join(
                out_dir, f"BOLD_s_3D_lin_atlas_2_5_FOLD_{fold}.nii.gz"
            )
            futures.append(executor.submit(run_fold, predictor, stop,
                                           T1_atlas, BOLD_atlas, weights,
                                           FoldResult(fold, out_file)))
        try:
            for future in as_completed(futures):
                result = future.result()
                if result is None:
                    continue
                if not os.path.isfile(result.path):
                    raise ComputationError(f"Fold {result.fold} did not "
                                           f"create {result.path}")
                LOGGER.verbose(f"FOLD {result.fold} finished: {result.path}")
                fold_results[result.fold] = result
        except Exception:
            stop.set()
            for future in futures:
                future.cancel()
            raise
    return fold_results


def run_inference(j_args):
    """
    :param j_args: Dictionary containing all args
    :return: j_args, but with j_args[inference] mapping "folds" to the
             FoldResults and "merged", "BOLD_s_3D_atlas" and "BOLD_s_3D" to
             the ensemble's outputs
    """
    out_dir = j_args["common"]["output_dir"]
    registration = j_args["registration"]
    outputs = {
        "merged": os.path.join(out_dir,
                               "BOLD_s_3D_lin_atlas_2_5_merged.nii.gz"),
        "BOLD_s_3D_atlas": os.path.join(out_dir,
                                        "BOLD_s_3D_lin_atlas_2_5.nii.gz"),
        "BOLD_s_3D": os.path.join(out_dir, "BOLD_s_3D.nii.gz")
    }

    outputs["folds"] = run_folds(
        j_args["tools"].predictor, registration["T1_norm_atlas"],
        registration["BOLD_d_3D_atlas"], j_args["resources"]["fold_weights"],
        out_dir, j_args["common"]["n_threads"]
    )

    LOGGER.info("Taking ensemble average of folds")
    average_folds(outputs["folds"].values(), outputs["merged"],
                  outputs["BOLD_s_3D_atlas"])

    LOGGER.info("Applying inverse transform to undistorted BOLD_s")
    registration["composer"].inverse(
        outputs["BOLD_s_3D_atlas"], "atlas", "functional",
        j_args["BOLD"]["BOLD_d_3D"], outputs["BOLD_s_3D"]
    )

    j_args["inference"] = outputs
    return j_args
