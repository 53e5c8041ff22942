"""Vision annotation, EXIF and visual signal extraction modules"""
