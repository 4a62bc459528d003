import pytest

from synbold.errors import ComputationError
from synbold.logger import SUBPROCESS_LEVEL_NUM
from synbold.utilities import run_subprocess


def test_undecodable_subprocess_output_is_still_logged(caplog):
    caplog.set_level(SUBPROCESS_LEVEL_NUM, logger="SynBOLD-DisCo")
    run_subprocess(["printf", "\\377fold done\\n"], "FOLD_1")
    lines = [r.getMessage() for r in caplog.records
             if r.levelno == SUBPROCESS_LEVEL_NUM]
    assert lines == ["\ufffdfold done"]


def test_failed_subprocess_is_a_computation_error():
    with pytest.raises(ComputationError, match="exited with status 1"):
        run_subprocess(["false"], "FOLD_2")
