"""
Image Scan Ingest

A webhook service that receives automated image-classification results,
applies the reported tags to stored images, and keeps each image's
moderation flag in step with its automated tags.
"""

__version__ = "1.0.0"
__author__ = "Image Scan Ingest Team"
