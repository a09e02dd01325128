"""
Exceptions raised by the point cloud -> mesh pipeline.
"""


class ConfigurationError(ValueError):
    """A parameter is outside its documented domain."""


class DegenerateInputError(ConfigurationError):
    """The cloud is empty or too small/flat for the requested neighbourhood."""


class ReconstructionError(RuntimeError):
    pass


class ConvergenceError(ReconstructionError):
    """The implicit-function solve did not converge."""


class EmptyReconstructionError(ReconstructionError):
    """Surface meshing produced no vertices."""
