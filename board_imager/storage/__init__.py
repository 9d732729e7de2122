"""Block-device lifecycle: image file, loop device, partitions, filesystems, mounts."""
