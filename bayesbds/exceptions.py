"""Custom exceptions for bayesbds.

This module defines exceptions used by bayesbds to signal errors
while assembling a model, running proposals and keeping the augmented
tree bookkeeping consistent.
"""

class BayesBDSError(Exception):
    """Base class for all bayesbds errors."""
    pass

class CycleError(BayesBDSError):
    """Exception raised when adding a node or edge would create a cycle in the model graph."""
    pass

class ConfigurationError(BayesBDSError):
    """Exception raised for malformed models, moves, monitors or runner settings."""
    pass

class NumericalError(BayesBDSError):
    """Exception raised when a log-density is NaN or a value falls outside a distribution's support."""
    pass

class DimensionError(BayesBDSError):
    """Exception raised when a structural move leaves the event bookkeeping inconsistent."""
    pass

class AbstractMethodError(BayesBDSError):
    """Exception raised when an abstract method has not been implemented."""
    pass
