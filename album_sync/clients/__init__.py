"""album_sync clients – remote photo-hosting services."""

from .smugmug import (
    Album,
    RemoteImage,
    SmugMugClient,
    SmugMugTransport,
    SmugMugUploader,
)

__all__ = ["Album", "RemoteImage", "SmugMugClient", "SmugMugTransport", "SmugMugUploader"]
