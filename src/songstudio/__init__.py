"""
SongStudio - AI song assembly pipeline
"""

__version__ = "0.1.0"
