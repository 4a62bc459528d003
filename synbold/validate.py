"""
argparse type= validators for the SynBOLD-DisCo command line
"""
import argparse
import os


def valid_output_dir(path):
    """
    Create the outputs folder if it is missing
    :param path: String, path to the folder every artifact and the log go into
    :return: String, absolute path to an existing writeable folder
    """
    return validate(path, lambda x: os.access(x, os.W_OK), os.path.abspath,
                    "Cannot create a writeable outputs directory at '{}'",
                    lambda y: os.makedirs(y, exist_ok=True))


def valid_positive_float(to_validate):
    """
    :param to_validate: String from the command line, e.g. a readout time
    :return: Float greater than 0
    """
    return validate(to_validate, lambda x: float(x) > 0, float,
                    "{} is not a positive number")


def valid_readable_dir(path):
    """
    :param path: String, path to a folder of inputs
    :return: String, absolute path to an existing readable folder
    """
    return validate(path, lambda x: os.path.isdir(x) and os.access(x, os.R_OK),
                    os.path.abspath, "Cannot read directory at '{}'")


def valid_whole_number(to_validate):
    """
    :param to_validate: String from the command line, e.g. a thread count
    :return: Int greater than 0
    """
    return validate(to_validate, lambda x: int(x) > 0, int,
                    "{} is not a positive integer")


def validate(to_validate, is_real, make_valid, err_msg, prepare=None):
    """
    Run prepare (if any), check is_real, and convert with make_valid. Any
    failure along the way becomes an argparse.ArgumentTypeError showing
    err_msg, so argparse reports it as a usage error.
    :param to_validate: String to check
    :param is_real: Function returning True iff to_validate is acceptable
    :param make_valid: Function returning the converted value
    :param err_msg: String with one {} for to_validate
    :param prepare: Function to call on to_validate before checking it
    :return: make_valid(to_validate)
    """
    try:
        if prepare:
            prepare(to_validate)
        if not is_real(to_validate):
            raise ValueError(to_validate)
        return make_valid(to_validate)
    except (OSError, TypeError, ValueError) as e:
        raise argparse.ArgumentTypeError(err_msg.format(to_validate)) from e
