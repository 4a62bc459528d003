import filecmp
import json
import os
import shutil

import nibabel as nib
import numpy as np
import pytest

from conftest import load_data, make_BOLD_data, save_volume
from synbold.errors import ConfigurationError, ValidationError
from synbold.prep_bold import (
    clear_redundant_qform,
    format_vector,
    get_phase_encoding_vector,
    read_phase_encoding_direction,
    run_prep_BOLD
)
from synbold.utilities import mean_over_time


@pytest.mark.parametrize("phase, vector", [("i", "1 0 0"), ("i-", "-1 0 0"),
                                           ("j", "0 1 0"), ("j-", "0 -1 0"),
                                           ("k", "0 0 1"), ("k-", "0 0 -1")])
def test_phase_encoding_vectors(phase, vector):
    assert format_vector(get_phase_encoding_vector(phase)) == vector


@pytest.mark.parametrize("phase", ["x", "j+", "J", "-j", "", None])
def test_unrecognized_phase_encoding_fails(phase):
    with pytest.raises(ValidationError):
        get_phase_encoding_vector(phase)


@pytest.mark.parametrize("sidecar", [{}, {"PhaseEncodingDirection": None},
                                     {"PhaseEncodingDirection": ""}])
def test_sidecar_without_phase_encoding_fails(tmp_path, sidecar):
    sidecar_fpath = tmp_path / "BOLD_d.json"
    sidecar_fpath.write_text(json.dumps(sidecar))
    with pytest.raises(ConfigurationError, match="PhaseEncodingDirection"):
        read_phase_encoding_direction(str(sidecar_fpath))


@pytest.mark.parametrize("sform_code, qform_code, cleared", [
    (1, 1, True), (1, 0, False), (2, 1, False), (1, 2, False)
])
def test_qform_cleared_only_when_both_codes_are_1(tmp_path, sform_code,
                                                  qform_code, cleared):
    img_fpath = save_volume(str(tmp_path / "img.nii.gz"), np.ones((4, 4, 4)),
                            sform_code, qform_code)
    assert clear_redundant_qform(img_fpath) == cleared
    hdr = nib.load(img_fpath).header
    assert int(hdr["sform_code"]) == sform_code
    assert int(hdr["qform_code"]) == (0 if cleared else qform_code)


def add_BOLD(j_args, tmp_path, data, phase="j-"):
    in_dir = tmp_path / "in"
    in_dir.mkdir(exist_ok=True)
    j_args["inputs"]["BOLD"] = save_volume(str(in_dir / "BOLD_d.nii.gz"),
                                           data, 1, 0)
    j_args["inputs"]["BOLD_json"] = str(in_dir / "BOLD_d.json")
    (in_dir / "BOLD_d.json").write_text(
        json.dumps({"PhaseEncodingDirection": phase})
    )
    return j_args


def test_3D_BOLD_outputs_are_copies(make_j_args, tmp_path, fake_tools):
    j_args = add_BOLD(make_j_args(), tmp_path, np.ones((6, 6, 6)))
    BOLD = run_prep_BOLD(j_args)["BOLD"]
    assert filecmp.cmp(BOLD["BOLD_d"], BOLD["BOLD_d_mc"], shallow=False)
    assert filecmp.cmp(BOLD["BOLD_d"], BOLD["BOLD_d_3D"], shallow=False)
    assert BOLD["phase_vector"] == (0, -1, 0)
    assert not fake_tools.called("realign")


def test_motion_corrected_4D_BOLD_is_only_averaged(make_j_args, tmp_path,
                                                   fake_tools):
    data = make_BOLD_data()
    j_args = add_BOLD(make_j_args(motion_corrected=True), tmp_path, data)
    BOLD = run_prep_BOLD(j_args)["BOLD"]
    assert not fake_tools.called("realign")
    assert filecmp.cmp(BOLD["BOLD_d"], BOLD["BOLD_d_mc"], shallow=False)
    mean = load_data(BOLD["BOLD_d_3D"])
    np.testing.assert_allclose(mean, data.mean(axis=3), rtol=1e-5)

    # Re-averaging a series made of the mean gives the mean back
    series = save_volume(str(tmp_path / "series.nii.gz"),
                         np.repeat(mean[..., np.newaxis], 4, axis=3))
    remean = mean_over_time(series, str(tmp_path / "remean.nii.gz"))
    np.testing.assert_allclose(load_data(remean), mean, rtol=1e-6)


def test_4D_BOLD_is_motion_corrected(make_j_args, tmp_path, fake_tools):
    j_args = add_BOLD(make_j_args(), tmp_path, make_BOLD_data(), phase="i")
    BOLD = run_prep_BOLD(j_args)["BOLD"]
    assert len(fake_tools.called("realign")) == 1
    assert fake_tools.called("realign")[0][0] == BOLD["BOLD_d"]
    assert os.path.isfile(BOLD["BOLD_d_mc"])
    assert nib.load(BOLD["BOLD_d_3D"]).ndim == 3
    assert BOLD["phase_vector"] == (1, 0, 0)


def test_5D_BOLD_fails(make_j_args, tmp_path):
    j_args = add_BOLD(make_j_args(), tmp_path, np.ones((4, 4, 4, 2, 2)))
    with pytest.raises(ValidationError, match="unexpected dimension"):
        run_prep_BOLD(j_args)


def test_input_BOLD_is_never_modified(make_j_args, tmp_path):
    j_args = add_BOLD(make_j_args(), tmp_path, np.ones((4, 4, 4)))
    original = str(tmp_path / "original.nii.gz")
    save_volume(j_args["inputs"]["BOLD"], np.ones((4, 4, 4)), 1, 1)
    shutil.copyfile(j_args["inputs"]["BOLD"], original)
    BOLD = run_prep_BOLD(j_args)["BOLD"]
    assert filecmp.cmp(j_args["inputs"]["BOLD"], original, shallow=False)
    assert int(nib.load(BOLD["BOLD_d"]).header["qform_code"]) == 0
