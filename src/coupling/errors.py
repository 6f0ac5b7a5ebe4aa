"""Exception and warning types raised by the coupling engine."""


class CouplingError(Exception):
    """Base class for fatal coupling errors."""


class ConfigurationError(CouplingError):
    """Invalid configuration, detected before any stepping occurs."""


class MappingError(CouplingError):
    """An element could not be associated with a neutronics cell."""


class CollectiveFailure(CouplingError):
    """A blocking exchange between ranks did not complete."""


class ConvergenceWarning(UserWarning):
    """Picard iteration reached its maximum count without meeting tolerance."""
