"""Tests for rootfs/customize.py - edits applied to the populated tree."""

import pytest

from conftest import BOOT_UUID, ROOT_UUID

from board_imager.domain.models import FormattedPartition
from board_imager.rootfs import customize
from board_imager.storage.exceptions import UUIDUnavailableError
from board_imager.storage.partition import PartitionPlanner


@pytest.fixture
def formatted():
    boot, root = PartitionPlanner().plan("boot-plus-root")
    return [
        FormattedPartition(boot, "/dev/mapper/loop7p1", "EFI", BOOT_UUID),
        FormattedPartition(root, "/dev/mapper/loop7p2", "debian-root", ROOT_UUID),
    ]


class TestFstab:
    def test_root_first_by_uuid(self, formatted):
        text = customize.render_fstab(formatted)

        assert text == (
            f"UUID={ROOT_UUID}\t/\text4\tdefaults,noatime\t0 0\n"
            f"UUID={BOOT_UUID}\t/boot/efi\tvfat\tdefaults,noatime\t0 0\n"
        )
        assert "LABEL=" not in text

    def test_missing_uuid_is_fatal(self, formatted):
        formatted[1].uuid = ""

        with pytest.raises(UUIDUnavailableError):
            customize.render_fstab(formatted)

    def test_write_fstab(self, formatted, tmp_path):
        path = customize.write_fstab(tmp_path, formatted)

        assert path == tmp_path / "etc" / "fstab"
        assert path.read_text().startswith(f"UUID={ROOT_UUID}")


class TestSetupScript:
    def test_contains_account_and_host_setup(self):
        script = customize.setup_script("debian", "debian", "debian", "Asia/Shanghai")

        assert "useradd -m -s /bin/bash -G adm,sudo,audio debian" in script
        assert "echo debian:debian | chpasswd" in script
        assert "echo debian > /etc/hostname" in script
        assert "ln -sf /usr/share/zoneinfo/Asia/Shanghai /etc/localtime" in script
        assert "apt-get install" not in script

    def test_quotes_values(self):
        script = customize.setup_script("debian", "pa ss", "debian", "UTC")

        assert "echo 'debian:pa ss' | chpasswd" in script

    def test_extra_packages(self):
        script = customize.setup_script("d", "d", "d", "UTC", ["openssh-server", "sudo"])

        assert "apt-get install -y --no-install-recommends openssh-server sudo" in script


class TestTreeEdits:
    def test_release_stamp(self, tmp_path):
        customize.write_release_stamp(tmp_path, "20261019-141500")

        assert (tmp_path / "etc" / "debian-release").read_text() == "20261019-141500\n"

    def test_sources_list(self, tmp_path):
        customize.write_sources_list(tmp_path, "https://ports.debian.org/debian-ports/", "trixie")

        assert (tmp_path / "etc" / "apt" / "sources.list").read_text() == (
            "deb https://ports.debian.org/debian-ports/ trixie main contrib non-free non-free-firmware\n"
        )

    def test_remove_ssh_host_keys(self, tmp_path):
        ssh = tmp_path / "etc" / "ssh"
        ssh.mkdir(parents=True)
        for name in ("ssh_host_rsa_key", "ssh_host_rsa_key.pub", "sshd_config"):
            (ssh / name).write_text("x")

        assert customize.remove_ssh_host_keys(tmp_path) == 2
        assert [p.name for p in ssh.iterdir()] == ["sshd_config"]

    def test_copy_boot_files(self, tmp_path):
        source = tmp_path / "prepared"
        (source / "dtb").mkdir(parents=True)
        (source / "dtb" / "board.dtb").write_text("dtb")
        (source / "env_k1-x.txt").write_text("rootdev=UUID=\n")
        root = tmp_path / "rootfs"

        assert customize.copy_boot_files(source, root) == 2
        assert (root / "boot" / "env_k1-x.txt").read_text() == "rootdev=UUID=\n"
        assert (root / "boot" / "dtb" / "board.dtb").exists()

    def test_copy_boot_files_without_source(self, tmp_path):
        assert customize.copy_boot_files(None, tmp_path) == 0
        assert customize.copy_boot_files(tmp_path / "missing", tmp_path) == 0

    def test_clean_apt_lists(self, tmp_path):
        lists = tmp_path / "var" / "lib" / "apt" / "lists"
        (lists / "partial").mkdir(parents=True)
        (lists / "deb.debian.org_InRelease").write_text("x")

        customize.clean_apt_lists(tmp_path)

        assert list(lists.iterdir()) == []
