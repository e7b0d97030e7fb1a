"""album_sync – keep local media folders and SmugMug albums in step without duplicate uploads."""

__version__ = "0.6.0"
