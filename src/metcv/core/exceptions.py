"""Error taxonomy shared by the split engine, dispatcher and CLI.

Fatal errors (`ValidationError`, `InvalidParameterError`) abort a run before
any partition is fitted. Partition-level errors (`BackendError`,
`PartitionTimeoutError`) are caught at the dispatch boundary and stored as
error entries on the `CVResult`.
"""


class MetCVError(Exception):
    """Base class for all metcv errors."""


class ValidationError(MetCVError, ValueError):
    """Malformed or inconsistent input data or configuration."""


class InvalidParameterError(MetCVError, ValueError):
    """Out-of-range fold/repeat counts or unknown scheme, sub-type or model."""


class BackendError(MetCVError, RuntimeError):
    """A model backend returned malformed output."""


class PartitionTimeoutError(MetCVError, TimeoutError):
    """A partition exceeded its wall-clock budget."""


FATAL_ERRORS = (ValidationError, InvalidParameterError)
