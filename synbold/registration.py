#!/usr/bin/env python3
# coding: utf-8

"""
Cross-modal aligner, atlas aligner, and transform composer.
"""
from dataclasses import dataclass
import os

from synbold.errors import ValidationError
from synbold.logger import LOGGER

# Coordinate spaces in the order a volume moves through them going forward
SPACES = ("functional", "structural", "atlas")

ATLAS_NAME = "mni_icbm152_t1_tal_nlin_asym_09c"


@dataclass(frozen=True)
class TransformHandle:
    """ A transform file mapping points from one named space to another """
    path: str
    source: str
    dest: str

    def __post_init__(self):
        for space in (self.source, self.dest):
            if space not in SPACES:
                raise ValidationError(f"Unknown coordinate space '{space}'")


class TransformComposer:
    """
    Moves volumes between spaces, always with one resampling call per move.
    Transforms are listed in the order antsApplyTransforms expects: the one
    closest to the destination space first.
    """
    def __init__(self, resampler, handles=()):
        """
        :param resampler: Object with apply(in_file, reference, transforms,
                          out_file) method
        :param handles: Iterable of TransformHandles between adjacent spaces
        """
        self.resampler = resampler
        self.handles = dict()
        for handle in handles:
            self.add(handle)

    def add(self, handle):
        if SPACES.index(handle.dest) - SPACES.index(handle.source) != 1:
            raise ValidationError("Transforms must map one space to the next: "
                                  f"{handle.source} to {handle.dest} does not")
        self.handles[(handle.source, handle.dest)] = handle

    def chain(self, source, dest):
        """
        :param source: String naming the space closer to "functional"
        :param dest: String naming the space closer to "atlas"
        :return: List of TransformHandles from source to dest, in step order
        """
        steps = list()
        for ix in range(SPACES.index(source), SPACES.index(dest)):
            try:
                steps.append(self.handles[(SPACES[ix], SPACES[ix + 1])])
            except KeyError:
                raise ValidationError("No transform from {} to {} space"
                                      .format(SPACES[ix], SPACES[ix + 1]))
        return steps

    def forward(self, volume, source, dest, reference, out_file):
        """
        :param volume: String, valid path to an image in source space
        :param source: String naming the space volume is in
        :param dest: String naming a space further along than source
        :param reference: String, valid path to an image on the output grid
        :param out_file: String, valid path to the resampled image to create
        :return: out_file
        """
        if self._order(source, dest) <= 0:
            raise ValidationError(f"Forward transform cannot go from {source} "
                                  f"back to {dest} space")
        transforms = [(handle.path, False)
                      for handle in reversed(self.chain(source, dest))]
        return self.resampler.apply(volume, reference, transforms, out_file)

    def inverse(self, volume, source, dest, reference, out_file):
        """
        :param volume: String, valid path to an image in source space
        :param source: String naming the space volume is in
        :param dest: String naming a space before source, e.g. "functional"
        :param reference: String, valid path to an image on the output grid
        :param out_file: String, valid path to the resampled image to create
        :return: out_file
        """
        if self._order(source, dest) >= 0:
            raise ValidationError(f"Inverse transform cannot go from {source} "
                                  f"on to {dest} space")
        transforms = [(handle.path, True)
                      for handle in self.chain(dest, source)]
        return self.resampler.apply(volume, reference, transforms, out_file)

    @staticmethod
    def _order(source, dest):
        for space in (source, dest):
            if space not in SPACES:
                raise ValidationError(f"Unknown coordinate space '{space}'")
        return SPACES.index(dest) - SPACES.index(source)


def run_registration(j_args):
    """
    Register the BOLD mean to the T1 and the T1 to the atlas, then move the
    normalized T1 and the BOLD mean into 2.5mm atlas space
    :param j_args: Dictionary containing all args
    :return: j_args, but with j_args[registration] mapping every transform
             and atlas-space image to its path, and the TransformComposer
             that uses those transforms
    """
    out_dir = j_args["common"]["output_dir"]
    registrar = j_args["tools"].registrar
    T1 = j_args["T1"]
    BOLD_d_3D = j_args["BOLD"]["BOLD_d_3D"]
    atlas = j_args["resources"]["atlas"]
    atlas_2_5 = j_args["resources"]["atlas_2_5"]
    outputs = {
        "epi_reg_mat": os.path.join(out_dir, "epi_reg_d.mat"),
        "epi_reg_itk": os.path.join(out_dir, "epi_reg_d_ANTS.txt"),
        "T1_norm_atlas": os.path.join(out_dir, "T1_norm_lin_atlas_2_5.nii.gz"),
        "BOLD_d_3D_atlas": os.path.join(out_dir,
                                        "BOLD_d_3D_lin_atlas_2_5.nii.gz")
    }

    LOGGER.info("epi_reg: Registering distorted BOLD to T1")
    registrar.epi_register(BOLD_d_3D, T1["T1_N3"], T1["T1_mask"],
                           T1["wm_mask"], os.path.join(out_dir, "epi_reg_d"))
    LOGGER.info("Converting FSL transform to ANTs transform")
    registrar.fsl_to_itk(T1["T1_N3"], BOLD_d_3D, outputs["epi_reg_mat"],
                         outputs["epi_reg_itk"])

    LOGGER.info(f"Running ANTs affine registration (T1 -> {atlas})")
    outputs["atlas_affine"] = registrar.register_to_atlas(
        T1["T1_norm"], atlas, os.path.join(out_dir, "ANTS")
    )

    composer = TransformComposer(j_args["tools"].resampler, (
        TransformHandle(outputs["epi_reg_itk"], "functional", "structural"),
        TransformHandle(outputs["atlas_affine"], "structural", "atlas")
    ))
    LOGGER.info("Applying linear transform to T1")
    composer.forward(T1["T1_norm"], "structural", "atlas", atlas_2_5,
                     outputs["T1_norm_atlas"])
    LOGGER.info("Applying linear transform to distorted BOLD")
    composer.forward(BOLD_d_3D, "functional", "atlas", atlas_2_5,
                     outputs["BOLD_d_3D_atlas"])

    outputs["composer"] = composer
    j_args["registration"] = outputs
    return j_args


def select_atlas_references(atlas_dir, skull_stripped):
    """
    :param atlas_dir: String, path to directory with the MNI reference images
    :param skull_stripped: True to use the brain-only (masked) references
    :return: Tuple of 2 strings, paths to the full-resolution reference and
             the 2.5mm reference
    """
    stem = ATLAS_NAME + ("_mask" if skull_stripped else "")
    return (os.path.join(atlas_dir, stem + ".nii.gz"),
            os.path.join(atlas_dir, stem + "_2_5.nii.gz"))
