"""Sparse image file creation.

The image file is the one artifact the pipeline never deletes: on failure it
is left in place so it can be inspected or the build retried.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from board_imager.domain.models import ImageFile
from board_imager.logging import LoggerFactory


log = LoggerFactory.for_loop()

DEFAULT_IMAGE_SIZE = 8 * 1024**3


def image_name(model: str, timestamp: Optional[str] = None) -> str:
    """File name like ``debian-orangepi-rv2-20261019-141500.img``."""
    timestamp = timestamp or build_timestamp()
    return f"debian-{model}-{timestamp}.img"


def build_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d-%H%M%S")


def create_image_file(path: Path, size_bytes: int = DEFAULT_IMAGE_SIZE) -> ImageFile:
    """Create a sparse file of exactly ``size_bytes``.

    Raises:
        FileExistsError: If the path already exists
        ValueError: If size_bytes is not positive
    """
    if size_bytes <= 0:
        raise ValueError(f"Image size must be positive, got {size_bytes}")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # "x" refuses to clobber an image from an earlier run
    with open(path, "xb") as image:
        image.truncate(size_bytes)
    log.info(f"Created sparse image {path} ({size_bytes / 1024**3:.1f} GiB)")
    return ImageFile(path=path, size_bytes=size_bytes)
