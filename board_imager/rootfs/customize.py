"""Edits applied to the populated tree before the boot config is patched.

Operations:
    - render_fstab() / write_fstab(): UUID-based fstab, one line per partition
    - setup_script(): user, hostname and timezone setup run inside the chroot
    - write_release_stamp(): build timestamp in /etc/debian-release
    - write_sources_list(): apt sources for the image's own suite
    - remove_ssh_host_keys(): so every flashed board generates its own keys
    - copy_boot_files(): prepared bootloader, kernel and env file into /boot
    - clean_apt_lists(): drop downloaded package lists
"""

from __future__ import annotations

import shlex
import shutil
from pathlib import Path
from typing import Iterable, Optional, Sequence

from board_imager.domain.models import FormattedPartition, PartitionRole
from board_imager.logging import LoggerFactory
from board_imager.storage.exceptions import UUIDUnavailableError


log = LoggerFactory.for_rootfs()

FSTAB_OPTIONS = "defaults,noatime"
SOURCES_COMPONENTS = "main contrib non-free non-free-firmware"
USER_GROUPS = "adm,sudo,audio"


def _inside(root_dir, path: str) -> Path:
    return Path(root_dir) / path.lstrip("/")


def render_fstab(partitions: Iterable[FormattedPartition]) -> str:
    """fstab text with every filesystem referenced by UUID, root first."""
    ordered = sorted(partitions, key=lambda p: len(Path(p.spec.mount_path).parts))
    lines = []
    for partition in ordered:
        if not partition.uuid:
            # fstab never falls back to LABEL=, it is not unique across images
            raise UUIDUnavailableError(partition.node, "fstab needs a UUID for every entry")
        lines.append(
            f"UUID={partition.uuid}\t{partition.spec.mount_path}\t{partition.spec.fs_type}"
            f"\t{FSTAB_OPTIONS}\t0 0"
        )
    return "\n".join(lines) + "\n"


def write_fstab(root_dir, partitions: Sequence[FormattedPartition]) -> Path:
    path = _inside(root_dir, "/etc/fstab")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_fstab(partitions), encoding="utf-8")
    root = next(p for p in partitions if p.spec.role is PartitionRole.ROOT)
    log.info(f"Wrote {path} (root UUID={root.uuid})")
    return path


def setup_script(
    username: str,
    password: str,
    hostname: str,
    timezone: str,
    extra_packages: Sequence[str] = (),
) -> str:
    """Shell script for the chroot: apt index, user, hostname, timezone."""
    q = shlex.quote
    lines = [
        "export DEBIAN_FRONTEND=noninteractive",
        "apt-get update",
        f"id -u {q(username)} >/dev/null 2>&1 || useradd -m -s /bin/bash -G {USER_GROUPS} {q(username)}",
        f"echo {q(f'{username}:{password}')} | chpasswd",
        f"echo {q(hostname)} > /etc/hostname",
        f"echo {q(f'127.0.1.1 {hostname}')} >> /etc/hosts",
        f"ln -sf {q(f'/usr/share/zoneinfo/{timezone}')} /etc/localtime",
        f"echo {q(timezone)} > /etc/timezone",
    ]
    if extra_packages:
        packages = " ".join(q(p) for p in extra_packages)
        lines.append(f"apt-get install -y --no-install-recommends {packages}")
    return "\n".join(lines) + "\n"


def write_release_stamp(root_dir, timestamp: str) -> Path:
    path = _inside(root_dir, "/etc/debian-release")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{timestamp}\n", encoding="utf-8")
    return path


def write_sources_list(root_dir, mirror: str, suite: str) -> Path:
    path = _inside(root_dir, "/etc/apt/sources.list")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"deb {mirror} {suite} {SOURCES_COMPONENTS}\n", encoding="utf-8")
    log.info(f"Wrote {path} for {suite}")
    return path


def remove_ssh_host_keys(root_dir) -> int:
    removed = 0
    for key in _inside(root_dir, "/etc/ssh").glob("ssh_host_*"):
        key.unlink()
        removed += 1
    if removed:
        log.info(f"Removed {removed} SSH host key file(s)")
    return removed


def copy_boot_files(source_dir: Optional[Path], root_dir) -> int:
    """Copy the contents of ``source_dir`` into the image's /boot."""
    if source_dir is None:
        return 0
    source_dir = Path(source_dir)
    if not source_dir.is_dir():
        log.warning(f"Boot files directory {source_dir} does not exist, nothing copied")
        return 0
    target = _inside(root_dir, "/boot")
    target.mkdir(parents=True, exist_ok=True)
    copied = 0
    for entry in sorted(source_dir.iterdir()):
        if entry.is_dir():
            shutil.copytree(entry, target / entry.name, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, target / entry.name)
        copied += 1
    log.info(f"Copied {copied} boot entries from {source_dir}")
    return copied


def clean_apt_lists(root_dir) -> None:
    lists = _inside(root_dir, "/var/lib/apt/lists")
    if not lists.is_dir():
        return
    for entry in lists.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()
    log.debug(f"Cleared {lists}")
