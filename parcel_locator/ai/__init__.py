"""AI and machine learning modules"""

from parcel_locator.ai.image_features import ImageFeatureAnalyzer, features_from_labels

__all__ = [
    'ImageFeatureAnalyzer',
    'features_from_labels'
]
