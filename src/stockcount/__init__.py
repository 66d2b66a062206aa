"""Voice and text inventory command core: segmentation, extraction, confirmation."""

__version__ = "0.1.0"
