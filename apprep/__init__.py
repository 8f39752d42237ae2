"""apprep - AP practice question service."""

__version__ = "1.0.0"
