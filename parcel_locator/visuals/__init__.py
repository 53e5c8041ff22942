"""Candidate imagery modules"""

from parcel_locator.visuals.asset_builder import VisualAssetBuilder

__all__ = ['VisualAssetBuilder']
