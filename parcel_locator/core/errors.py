"""Exceptions raised by the localisation pipeline."""


class LocatorError(Exception):
    """Base class for pipeline errors."""


class AnnotationError(LocatorError):
    """The image could not be annotated. Without visual evidence the request fails."""


class GeocodingError(LocatorError):
    """A single address could not be geocoded."""

    def __init__(self, query, message):
        super().__init__(f"{query}: {message}")
        self.query = query


class CadastreError(LocatorError):
    """The cadastral registry returned an error or an unusable payload."""
