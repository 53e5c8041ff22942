"""Photo-to-parcel locator: finds the cadastral parcel shown in a property photo."""

__version__ = "1.0.0"
