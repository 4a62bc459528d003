"""
Errors raised by the SynBOLD-DisCo pipeline stages. run.py turns any of them
into a logged message and exit code 1.
"""


class SynBOLDError(Exception):
    """Base class for every error that aborts a pipeline run"""


class ValidationError(SynBOLDError):
    """Input data does not have the shape/codes a stage requires"""


class ConfigurationError(ValidationError):
    """Bad or missing flag value, input file, sidecar field or resource"""


class ComputationError(SynBOLDError):
    """An external tool failed, or a computed value is undefined"""
