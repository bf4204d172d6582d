"""Custom exception classes for the geolift package."""


class GeoLiftError(Exception):
    """Base class for all custom exceptions in the geolift package."""
    pass


class ConfigurationError(GeoLiftError):
    """Exception raised for invalid parameters or parameter combinations."""
    pass


class MalformedPanelError(GeoLiftError):
    """Exception raised when panel data breaks the validated-panel contract."""
    pass


class InsufficientDataError(GeoLiftError):
    """Exception raised when there is not enough pre-period or donor data to fit."""
    pass


class InsufficientDonorsError(InsufficientDataError):
    """Exception raised when the donor pool is too small to build a placebo distribution."""
    pass


class AugmentationError(GeoLiftError):
    """Exception raised when an augmentation regression is ill-conditioned."""
    pass
