"""
ClipShot - Screen Capture, Recording & Annotation Toolkit

Screenshots, scroll captures stitched into tall images, and H.264 screen
recordings, with timed annotations composited on export.
"""

__version__ = "1.0.0"
__author__ = "ClipShot Team"
