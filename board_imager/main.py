import argparse
import os
import platform
import shutil
import sys
from pathlib import Path

from board_imager.config import settings
from board_imager.logging import LoggerFactory, new_job_id, operation_context, setup_logging
from board_imager.pipeline.controller import BuildComponents, ImageBuildPipeline, force_cleanup
from board_imager.pipeline.ledger import ResourceLedger
from board_imager.storage.commands import REQUIRED_TOOLS, check_required_tools
from board_imager.storage.exceptions import ImageBuildError
from board_imager.storage.image import build_timestamp, create_image_file, image_name


log = LoggerFactory.for_system()


def log_host_info() -> None:
    log.debug(f"Host: {platform.system()} {platform.release()} {platform.machine()}")
    log.debug(f"CPU cores: {os.cpu_count()}")
    try:
        usage = shutil.disk_usage(Path.cwd())
        log.debug(f"Free space in {Path.cwd()}: {usage.free / 1024**3:.1f} GiB")
    except OSError as error:
        log.debug(f"Could not read disk usage: {error}")


def _parse_size(value: str) -> int:
    units = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    value = value.strip().upper().removesuffix("IB").removesuffix("B")
    if value and value[-1] in units:
        return int(float(value[:-1]) * units[value[-1]])
    return int(value)


def _report_failure(error: Exception) -> None:
    stage = getattr(error, "stage", None) or "preflight"
    resource = getattr(error, "resource", None)
    message = f"Build failed in stage {stage}"
    if resource:
        message += f" ({resource})"
    log.error(f"{message}: {error}")


def cleanup_stale_ledger(config: settings.BuildConfig) -> bool:
    """Unwind resources left by a crashed build; True when nothing is held afterwards."""
    ledger = ResourceLedger.load(config.ledger_path)
    if not len(ledger) and not ledger.image_path:
        return True
    log.warning(
        f"Found ledger from an earlier build ({len(ledger)} resource(s)) at {config.ledger_path}"
    )
    failed = force_cleanup(BuildComponents.default(config), ledger)
    return not failed


def build(config: settings.BuildConfig) -> int:
    check_required_tools((*REQUIRED_TOOLS, config.populator))
    log_host_info()
    if not cleanup_stale_ledger(config):
        log.error("Resources from an earlier build are still held, run `board-imager cleanup`")
        return 1

    timestamp = build_timestamp()
    image_path = config.output_dir / image_name(config.model, timestamp)
    image = create_image_file(image_path, config.image_size_bytes)

    job_id = new_job_id()
    pipeline = ImageBuildPipeline(config, job_id=job_id, timestamp=timestamp)
    with operation_context("build", job_id=job_id, model=config.model, image=str(image_path)):
        artifacts = pipeline.run(image)
    log.success(f"Image ready: {artifacts.image.path} (root UUID={artifacts.root_uuid})")
    return 0


def cleanup(config: settings.BuildConfig, ledger_path: Path) -> int:
    ledger = ResourceLedger.load(ledger_path)
    if not len(ledger) and not ledger.image_path:
        log.info(f"Nothing recorded in {ledger_path}")
        return 0
    with operation_context("cleanup", ledger=str(ledger_path)):
        failed = force_cleanup(BuildComponents.default(config), ledger)
    if failed:
        for entry in failed:
            log.error(f"Still held: {entry.kind} {entry.identifier}")
        return 1
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="board-imager", description="Build a bootable Debian image for an embedded board"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log every device poll")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Build a new image")
    build_parser.add_argument("--model", help="Board model used in the image name")
    build_parser.add_argument(
        "--scheme", choices=["single-root", "boot-plus-root"], help="Partition layout"
    )
    build_parser.add_argument("--size", type=_parse_size, help="Image size, e.g. 8G")
    build_parser.add_argument("--output-dir", type=Path, help="Where the image file is created")
    build_parser.add_argument("--workdir", type=Path, help="Mount point for the image root")
    build_parser.add_argument("--suite", help="Suite written to the image's sources.list")
    build_parser.add_argument("--bootstrap-suite", help="Suite passed to the populator")
    build_parser.add_argument("--mirror", help="Mirror used for population")
    build_parser.add_argument("--populator", choices=["debootstrap", "mmdebstrap"])
    build_parser.add_argument("--boot-files", type=Path, help="Directory copied into /boot")
    build_parser.add_argument("--boot-env-file", help="Boot environment file name under /boot")
    build_parser.add_argument("--ledger", type=Path, help="Resource ledger path")

    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Release resources left behind by a crashed build"
    )
    cleanup_parser.add_argument("--ledger", type=Path, help="Resource ledger path")

    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)

    if args.command == "cleanup":
        config = settings.build_config({"ledger_path": args.ledger})
        try:
            return cleanup(config, config.ledger_path)
        except ImageBuildError as error:
            log.error(f"Cleanup failed: {error}")
            return 1

    config = settings.build_config(
        {
            "model": args.model,
            "scheme": args.scheme,
            "image_size_bytes": args.size,
            "output_dir": args.output_dir,
            "workdir": args.workdir,
            "suite": args.suite,
            "bootstrap_suite": args.bootstrap_suite,
            "mirror": args.mirror,
            "populator": args.populator,
            "boot_files_dir": args.boot_files,
            "boot_env_file": args.boot_env_file,
            "ledger_path": args.ledger,
        }
    )
    try:
        return build(config)
    except (ImageBuildError, OSError) as error:
        _report_failure(error)
        return 1


if __name__ == "__main__":
    sys.exit(main())
