"""Boot environment patching.

The board's bootloader reads a key=value environment file from ``/boot``
whose ``rootdev=UUID=<uuid>`` token tells the kernel where the root
filesystem lives. After formatting, that token must carry the UUID blkid
reported for the new root filesystem.

A substitution that silently matches nothing produces an image that looks
fine and never boots, so every patch is followed by :meth:`verify`, which
re-reads the file and fails loudly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from board_imager.logging import LoggerFactory
from board_imager.storage.exceptions import PatchVerificationError


log = LoggerFactory.for_boot()

# Matches the whole prior value up to whitespace, including an empty or
# non-hex placeholder, so nothing of the old value survives the substitution.
ROOTDEV_PATTERN = re.compile(r"rootdev=UUID=\S*")

_ROOTDEV_LINE = re.compile(r"rootdev=UUID=")


@dataclass(frozen=True)
class PatchResult:
    file_path: Path
    found: bool
    replacements: int = 0
    original_text: Optional[str] = None


class BootConfigPatcher:
    def patch_root_device_reference(
        self,
        file_path,
        new_uuid: str,
        pattern: re.Pattern = ROOTDEV_PATTERN,
    ) -> PatchResult:
        """Rewrite every root-device token in ``file_path`` to ``new_uuid``.

        A missing file is a warning: the board may boot some other way.
        """
        path = Path(file_path)
        if not new_uuid:
            raise PatchVerificationError(str(path), "refusing to patch with an empty UUID")
        if not path.is_file():
            log.warning(f"Boot environment file {path} not found, skipping rootdev patch")
            return PatchResult(file_path=path, found=False)

        original = path.read_text(encoding="utf-8")
        patched, count = pattern.subn(f"rootdev=UUID={new_uuid}", original)
        if count:
            path.write_text(patched, encoding="utf-8")
            log.info(f"Patched {count} rootdev reference(s) in {path} to {new_uuid}")
        else:
            log.warning(f"No rootdev=UUID= token found in {path}")
        return PatchResult(file_path=path, found=True, replacements=count, original_text=original)

    def verify(self, file_path, new_uuid: str, original_text: Optional[str] = None) -> None:
        """Re-read ``file_path`` and check the substitution took effect.

        Raises:
            PatchVerificationError: If the new token is absent, another rootdev
                value survives, or a line other than rootdev changed
        """
        path = Path(file_path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as error:
            raise PatchVerificationError(str(path), f"cannot re-read file: {error}") from error

        expected = f"rootdev=UUID={new_uuid}"
        tokens = ROOTDEV_PATTERN.findall(text)
        if expected not in tokens:
            raise PatchVerificationError(str(path), f"{expected} not present after patching")
        stale = sorted({token for token in tokens if token != expected})
        if stale:
            raise PatchVerificationError(str(path), f"stale references remain: {', '.join(stale)}")

        if original_text is not None:
            before = [l for l in original_text.splitlines() if not _ROOTDEV_LINE.search(l)]
            after = [l for l in text.splitlines() if not _ROOTDEV_LINE.search(l)]
            if before != after:
                raise PatchVerificationError(str(path), "lines other than rootdev changed")
        log.debug(f"Verified {expected} in {path}")

    def patch_and_verify(self, file_path, new_uuid: str) -> PatchResult:
        result = self.patch_root_device_reference(file_path, new_uuid)
        if result.found:
            self.verify(file_path, new_uuid, original_text=result.original_text)
        return result
