import json
import os
import shutil

import nibabel as nib
import numpy as np
import pytest

from synbold.ensemble import NUM_FOLDS, WEIGHTS_PATTERN
from synbold.get_args import RunConfiguration
from synbold.registration import select_atlas_references
from synbold.tools import Toolbox
from synbold.topup import TOPUP_PRESETS


def save_volume(fpath, data, sform_code=1, qform_code=1):
    img = nib.Nifti1Image(np.asarray(data, dtype=np.float32), np.eye(4))
    img.header.set_sform(np.eye(4), code=sform_code)
    img.header.set_qform(np.eye(4), code=qform_code)
    nib.save(img, fpath)
    return fpath


def load_data(fpath):
    return nib.load(fpath).get_fdata()


def make_T1_data(shape=(8, 8, 8)):
    return np.arange(1, np.prod(shape) + 1, dtype=np.float32).reshape(shape)


def make_BOLD_data(shape=(8, 8, 8, 3)):
    rng = np.random.default_rng(0)
    return rng.uniform(100, 200, size=shape).astype(np.float32)


class FakeTools:
    """
    Stand-ins for every external tool. Each records its calls and writes
    simple, deterministic outputs.
    """
    def __init__(self, wm_probability=1.0):
        self.calls = list()
        self.wm_probability = wm_probability

    def record(self, name, *args):
        self.calls.append((name, args))

    def called(self, name):
        return [args for each, args in self.calls if each == name]

    def correct(self, in_file, out_file):
        self.record("correct", in_file, out_file)
        shutil.copyfile(in_file, out_file)
        return out_file

    def segment(self, in_file, out_basename):
        self.record("segment", in_file, out_basename)
        wm_pve = f"{out_basename}_pve_2.nii.gz"
        shape = nib.load(in_file).shape
        save_volume(wm_pve, np.full(shape, self.wm_probability))
        return wm_pve

    def realign(self, in_file, out_file):
        self.record("realign", in_file, out_file)
        mean_img = out_file.replace(".nii.gz", "_mean_reg.nii.gz")
        shutil.copyfile(in_file, out_file)
        save_volume(mean_img, load_data(in_file).mean(axis=3))
        return out_file, mean_img

    def strip(self, in_file, out_file):
        self.record("strip", in_file, out_file)
        shutil.copyfile(in_file, out_file)
        return out_file

    def epi_register(self, epi, t1_head, t1_brain, wmseg, out_base):
        self.record("epi_register", epi, t1_head, t1_brain, wmseg, out_base)
        return self._write_text(out_base + ".mat")

    def fsl_to_itk(self, reference, source, fsl_mat, itk_out):
        self.record("fsl_to_itk", reference, source, fsl_mat, itk_out)
        return self._write_text(itk_out)

    def register_to_atlas(self, moving, fixed, out_prefix):
        self.record("register_to_atlas", moving, fixed, out_prefix)
        return self._write_text(out_prefix + "0GenericAffine.mat")

    def apply(self, *args):
        # Resampler.apply and DistortionEstimator.apply share a name
        if len(args) == 4:
            in_file, reference, transforms, out_file = args
            self.record("resample", in_file, reference, transforms, out_file)
            shape = nib.load(reference).shape[:3]
            save_volume(out_file, np.full(shape, load_data(in_file).mean()))
        else:
            in_file, encoding_file, fieldcoef, movpar, out_file = args
            self.record("applytopup", *args)
            shutil.copyfile(in_file, out_file)
        return out_file

    def smooth(self, in_file, sigma, out_file):
        self.record("smooth", in_file, sigma, out_file)
        shutil.copyfile(in_file, out_file)
        return out_file

    def predict(self, t1, bold, weights, out_file, tag):
        self.record("predict", t1, bold, weights, out_file, tag)
        fold = int(tag.rsplit("_", 1)[-1])
        save_volume(out_file, np.full(nib.load(bold).shape, float(fold)))
        return out_file

    def estimate(self, in_file, encoding_file, config, out_base, out_field,
                 out_corrected, n_threads):
        self.record("estimate", in_file, encoding_file, config, out_base,
                    out_field, out_corrected, n_threads)
        shutil.copyfile(in_file, out_corrected)
        return (self._write_text(out_base + "_fieldcoef.nii.gz"),
                self._write_text(out_base + "_movpar.txt"))

    @staticmethod
    def _write_text(fpath):
        with open(fpath, "w") as outfile:
            outfile.write("1 0 0 0\n0 1 0 0\n0 0 1 0\n0 0 0 1\n")
        return fpath

    def as_toolbox(self):
        return Toolbox(*[self] * len(Toolbox._fields))


@pytest.fixture
def fake_tools():
    return FakeTools()


@pytest.fixture
def inputs_dir(tmp_path):
    """ Input directory with a 3D T1, a 4D BOLD, and the BOLD's sidecar """
    in_dir = tmp_path / "INPUTS"
    in_dir.mkdir()
    save_volume(str(in_dir / "T1.nii.gz"), make_T1_data())
    save_volume(str(in_dir / "BOLD_d.nii.gz"), make_BOLD_data())
    with open(in_dir / "BOLD_d.json", "w") as outfile:
        json.dump({"PhaseEncodingDirection": "j-",
                   "TotalReadoutTime": 0.05}, outfile)
    return str(in_dir)


@pytest.fixture
def outputs_dir(tmp_path):
    return str(tmp_path / "OUTPUTS")


@pytest.fixture
def resources_dir(tmp_path):
    """ Stand-in for the container's atlases, weights, and TOPUP presets """
    res_dir = tmp_path / "home"
    (res_dir / "Models").mkdir(parents=True)
    (res_dir / "flirtsch").mkdir()
    for skull_stripped in (True, False):
        atlas, atlas_2_5 = select_atlas_references(str(res_dir), skull_stripped)
        save_volume(atlas, np.ones((10, 10, 10)))
        save_volume(atlas_2_5, np.ones((6, 6, 6)))
    for fold in range(1, NUM_FOLDS + 1):
        weights = WEIGHTS_PATTERN.format(fold).replace("*", "119")
        (res_dir / "Models" / weights).write_text("weights")
    for preset in TOPUP_PRESETS.values():
        (res_dir / "flirtsch" / preset).write_text(f"# {preset}\n")
    (res_dir / "inference.py").write_text("")
    return str(res_dir)


@pytest.fixture
def make_argv(inputs_dir, outputs_dir, resources_dir):
    def _make_argv(*flags):
        return ["--inputs-dir", inputs_dir, "--outputs-dir", outputs_dir,
                "--atlas-dir", resources_dir,
                "--models-dir", os.path.join(resources_dir, "Models"),
                "--inference-script", os.path.join(resources_dir, "inference.py"),
                "--topup-cnf-dir", os.path.join(resources_dir, "flirtsch"),
                "--nthreads", "2", *flags]
    return _make_argv


@pytest.fixture
def make_j_args(tmp_path, fake_tools):
    """
    :return: Function that builds a j_args dict for calling one stage directly
    """
    def _make_j_args(**run_overrides):
        out_dir = tmp_path / "stage_outputs"
        out_dir.mkdir(exist_ok=True)
        return {"common": {"output_dir": str(out_dir), "n_threads": 2},
                "run": RunConfiguration(**run_overrides),
                "inputs": dict(),
                "resources": dict(),
                "tools": fake_tools.as_toolbox()}
    return _make_j_args
