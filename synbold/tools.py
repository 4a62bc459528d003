#!/usr/bin/env python3
# coding: utf-8

"""
External imaging tools behind small capability classes. Each class builds a
nipype interface (build_* methods) and runs it; stages only ever call the
capability methods, so tests can swap in fakes with the same methods.
"""
from collections import namedtuple
import os

from nipype.interfaces import ants, c3, fsl

from synbold.errors import ComputationError
from synbold.logger import LOGGER
from synbold.utilities import run_subprocess

OUTPUT_TYPE = "NIFTI_GZ"

Toolbox = namedtuple("Toolbox", ["bias_corrector", "segmenter",
                                 "motion_corrector", "skull_stripper",
                                 "registrar", "resampler", "smoother",
                                 "predictor", "distortion_estimator"])


def make_toolbox(j_args):
    """
    :param j_args: Dictionary containing all args
    :return: Toolbox of every real (nipype/subprocess-backed) capability
    """
    n_threads = j_args["common"]["n_threads"]
    resources = j_args["resources"]
    return Toolbox(bias_corrector=BiasCorrector(n_threads),
                   segmenter=Segmenter(),
                   motion_corrector=MotionCorrector(),
                   skull_stripper=SkullStripper(),
                   registrar=Registrar(n_threads),
                   resampler=Resampler(n_threads),
                   smoother=Smoother(),
                   predictor=Predictor(resources["python"],
                                       resources["inference_script"]),
                   distortion_estimator=DistortionEstimator())


def require_file(fpath, label):
    """
    :param fpath: String, path that a tool should have created
    :param label: String naming the tool
    :return: fpath if it exists
    """
    if not os.path.isfile(fpath):
        raise ComputationError(f"{label} did not create {fpath}")
    return fpath


def run_interface(interface, label):
    """
    Run a nipype interface and forward its output to the log
    :param interface: nipype CommandLine interface with every input set
    :param label: String naming the tool in the log
    :return: nipype InterfaceResult
    """
    LOGGER.verbose("Now running {}:\n{}".format(label, interface.cmdline))
    try:
        result = interface.run()
    except (OSError, RuntimeError) as e:
        raise ComputationError(f"{label} failed: {e}") from e
    for line in (result.runtime.stdout or "").splitlines():
        LOGGER.subprocess(line, extra={"id": label})
    return result


class BiasCorrector:
    def __init__(self, n_threads=1):
        self.n_threads = n_threads

    def build(self, in_file, out_file):
        return ants.N4BiasFieldCorrection(dimension=3, input_image=in_file,
                                          output_image=out_file,
                                          num_threads=self.n_threads)

    def correct(self, in_file, out_file):
        run_interface(self.build(in_file, out_file), "N4BiasFieldCorrection")
        return require_file(out_file, "N4BiasFieldCorrection")


class Segmenter:
    def build(self, in_file, out_basename):
        fast = fsl.FAST(in_files=[in_file], img_type=1,
                        out_basename=out_basename)
        fast.inputs.output_type = OUTPUT_TYPE
        return fast

    def segment(self, in_file, out_basename):
        """
        3-class tissue segmentation
        :return: String, path to the white matter partial volume map
        """
        run_interface(self.build(in_file, out_basename), "FAST")
        return require_file(f"{out_basename}_pve_2.nii.gz", "FAST")


class MotionCorrector:
    def build(self, in_file, out_file):
        mcflirt = fsl.MCFLIRT(in_file=in_file, out_file=out_file,
                              mean_vol=True, save_plots=True)
        mcflirt.inputs.output_type = OUTPUT_TYPE
        return mcflirt

    def realign(self, in_file, out_file):
        """
        :return: Tuple of 2 strings, paths to the realigned series and its mean
        """
        result = run_interface(self.build(in_file, out_file), "MCFLIRT")
        return (require_file(result.outputs.out_file, "MCFLIRT"),
                require_file(result.outputs.mean_img, "MCFLIRT"))


class SkullStripper:
    def build(self, in_file, out_file):
        bet = fsl.BET(in_file=in_file, out_file=out_file, robust=True)
        bet.inputs.output_type = OUTPUT_TYPE
        return bet

    def strip(self, in_file, out_file):
        run_interface(self.build(in_file, out_file), "BET")
        return require_file(out_file, "BET")


class Registrar:
    """
    BOLD-to-T1 boundary-based registration, FSL-to-ITK matrix conversion, and
    linear (rigid then affine) T1-to-atlas registration
    """
    def __init__(self, n_threads=1):
        self.n_threads = n_threads

    def build_epi_reg(self, epi, t1_head, t1_brain, wmseg, out_base):
        epi_reg = fsl.EpiReg(epi=epi, t1_head=t1_head, t1_brain=t1_brain,
                             wmseg=wmseg, out_base=out_base)
        epi_reg.inputs.output_type = OUTPUT_TYPE
        return epi_reg

    def epi_register(self, epi, t1_head, t1_brain, wmseg, out_base):
        """
        :return: String, path to the FSL-format BOLD-to-T1 matrix
        """
        run_interface(self.build_epi_reg(epi, t1_head, t1_brain, wmseg,
                                         out_base), "epi_reg")
        return require_file(out_base + ".mat", "epi_reg")

    def build_c3d(self, reference, source, fsl_mat, itk_out):
        # c3d_affine_tool -ref <reference> -src <source> <mat> -fsl2ras -oitk <out>
        return c3.C3dAffineTool(reference_file=reference, source_file=source,
                                transform_file=fsl_mat, fsl2ras=True,
                                itk_transform=itk_out)

    def fsl_to_itk(self, reference, source, fsl_mat, itk_out):
        """
        :return: String, path to the ITK-format copy of fsl_mat
        """
        run_interface(self.build_c3d(reference, source, fsl_mat, itk_out),
                      "c3d_affine_tool")
        return require_file(itk_out, "c3d_affine_tool")

    def build_atlas_registration(self, moving, fixed, out_prefix):
        reg = ants.Registration()
        reg.inputs.fixed_image = [fixed]
        reg.inputs.moving_image = [moving]
        reg.inputs.output_transform_prefix = out_prefix
        reg.inputs.output_warped_image = out_prefix + "Warped.nii.gz"
        reg.inputs.dimension = 3
        reg.inputs.float = False
        reg.inputs.collapse_output_transforms = True
        reg.inputs.interpolation = "Linear"
        reg.inputs.use_histogram_matching = False
        reg.inputs.winsorize_lower_quantile = 0.005
        reg.inputs.winsorize_upper_quantile = 0.995
        reg.inputs.initial_moving_transform_com = 1
        reg.inputs.transforms = ["Rigid", "Affine"]
        reg.inputs.transform_parameters = [(0.1,), (0.1,)]
        reg.inputs.metric = ["MI", "MI"]
        reg.inputs.metric_weight = [1, 1]
        reg.inputs.radius_or_number_of_bins = [32, 32]
        reg.inputs.sampling_strategy = ["Regular", "Regular"]
        reg.inputs.sampling_percentage = [0.25, 0.25]
        reg.inputs.number_of_iterations = [[1000, 500, 250, 0]] * 2
        reg.inputs.convergence_threshold = [1e-6, 1e-6]
        reg.inputs.convergence_window_size = [10, 10]
        reg.inputs.shrink_factors = [[8, 4, 2, 1]] * 2
        reg.inputs.smoothing_sigmas = [[3, 2, 1, 0]] * 2
        reg.inputs.sigma_units = ["vox", "vox"]
        reg.inputs.verbose = True
        reg.inputs.num_threads = self.n_threads
        return reg

    def register_to_atlas(self, moving, fixed, out_prefix):
        """
        :return: String, path to the single collapsed affine transform
        """
        run_interface(self.build_atlas_registration(moving, fixed, out_prefix),
                      "antsRegistration")
        return require_file(out_prefix + "0GenericAffine.mat",
                            "antsRegistration")


class Resampler:
    def __init__(self, n_threads=1):
        self.n_threads = n_threads

    def build(self, in_file, reference, transforms, out_file):
        """
        :param transforms: List of (path, invert) tuples in ANTs order
        """
        return ants.ApplyTransforms(
            dimension=3, input_image=in_file, reference_image=reference,
            output_image=out_file, interpolation="BSpline",
            transforms=[path for path, _ in transforms],
            invert_transform_flags=[invert for _, invert in transforms],
            num_threads=self.n_threads
        )

    def apply(self, in_file, reference, transforms, out_file):
        run_interface(self.build(in_file, reference, transforms, out_file),
                      "antsApplyTransforms")
        return require_file(out_file, "antsApplyTransforms")


class Smoother:
    def build(self, in_file, sigma, out_file):
        maths = fsl.ImageMaths(in_file=in_file, op_string=f"-s {sigma}",
                               out_file=out_file)
        maths.inputs.output_type = OUTPUT_TYPE
        return maths

    def smooth(self, in_file, sigma, out_file):
        """ Gaussian smoothing with a sigma in mm """
        run_interface(self.build(in_file, sigma, out_file), "fslmaths")
        return require_file(out_file, "fslmaths")


class Predictor:
    """
    Runs the trained model's inference script on one fold's weights
    """
    def __init__(self, python, inference_script):
        self.python = python
        self.inference_script = inference_script

    def command(self, t1, bold, weights, out_file):
        return [self.python, self.inference_script, t1, bold, out_file, weights]

    def predict(self, t1, bold, weights, out_file, tag):
        run_subprocess(self.command(t1, bold, weights, out_file), tag)
        return require_file(out_file, f"Inference for {tag}")


class DistortionEstimator:
    """
    Susceptibility field estimation (topup) and correction (applytopup)
    """
    def build_topup(self, in_file, encoding_file, config, out_base, out_field,
                    out_corrected, n_threads):
        # Every optional output goes beside out_base, never into the cwd
        out_dir = os.path.dirname(os.path.abspath(out_base))
        topup = fsl.TOPUP(in_file=in_file, encoding_file=encoding_file,
                          config=config, out_base=out_base,
                          out_field=out_field, out_corrected=out_corrected,
                          out_jac_prefix=os.path.join(out_dir, "jac"),
                          out_mat_prefix=os.path.join(out_dir, "xfm"),
                          out_warp_prefix=os.path.join(out_dir, "warpfield"),
                          out_logfile=os.path.join(out_dir,
                                                   "BOLD_all_topup.log"),
                          args=f"-v --nthr={n_threads}")
        topup.inputs.output_type = OUTPUT_TYPE
        return topup

    def estimate(self, in_file, encoding_file, config, out_base, out_field,
                 out_corrected, n_threads):
        """
        :return: Tuple of 2 strings, paths to the field coefficients and the
                 movement parameters
        """
        run_interface(self.build_topup(in_file, encoding_file, config,
                                       out_base, out_field, out_corrected,
                                       n_threads), "topup")
        return (require_file(out_base + "_fieldcoef.nii.gz", "topup"),
                require_file(out_base + "_movpar.txt", "topup"))

    def build_applytopup(self, in_file, encoding_file, fieldcoef, movpar,
                         out_file):
        applytopup = fsl.ApplyTOPUP(
            in_files=[in_file], encoding_file=encoding_file, in_index=[1],
            in_topup_fieldcoef=fieldcoef, in_topup_movpar=movpar,
            method="jac", out_corrected=out_file
        )
        applytopup.inputs.output_type = OUTPUT_TYPE
        return applytopup

    def apply(self, in_file, encoding_file, fieldcoef, movpar, out_file):
        run_interface(self.build_applytopup(in_file, encoding_file, fieldcoef,
                                            movpar, out_file), "applytopup")
        return require_file(out_file, "applytopup")
