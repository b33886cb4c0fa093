import argparse
import signal
from pathlib import Path

from nanopi_imager.app.context import BuildContext
from nanopi_imager.config.settings import MOUNT_TOOLS, REQUIRED_TOOLS, resolve_config
from nanopi_imager.logging import LoggerFactory, setup_logging
from nanopi_imager import pipeline
from nanopi_imager.storage.exceptions import EXIT_OK, ImagerError, UserAbort
from nanopi_imager.storage.validation import validate_build_environment, validate_root


KEYWORDS = ("clean", "nocomp", "mount", "motd")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Build a bootable Debian image for the NanoPi R5S",
        epilog=(
            "keywords: clean (remove caches and artifacts), nocomp (skip xz), "
            "mount (mount an existing .img or .img.xz), motd (install the banner)"
        ),
    )
    parser.add_argument(
        "words",
        nargs="*",
        metavar="WORD",
        help="keywords and an optional media (.img / /dev/sdX) or image path",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output (download progress)")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument("--settings", type=Path, default=None, help="JSON settings file")
    args = parser.parse_args(argv)
    args.keywords = {word for word in args.words if word in KEYWORDS}
    paths = [word for word in args.words if word not in KEYWORDS]
    args.path = Path(paths[-1]) if paths else None
    return args


def run(args) -> int:
    log = LoggerFactory.for_system()
    keywords = args.keywords

    validate_root()

    config = resolve_config(
        media=None if "mount" in keywords else args.path,
        compress="nocomp" not in keywords,
        motd="motd" in keywords,
        workdir=Path.cwd(),
        settings_path=args.settings,
    )
    ctx = BuildContext(config=config)

    if "clean" in keywords:
        pipeline.clean(ctx)
        return EXIT_OK

    if "mount" in keywords:
        validate_build_environment(MOUNT_TOOLS)
        pipeline.mount_only(ctx, args.path)
        return EXIT_OK

    validate_build_environment(REQUIRED_TOOLS)

    artifact = pipeline.build(ctx)
    log.debug(f"artifact: {artifact}")
    return EXIT_OK


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        return run(args)
    except UserAbort:
        log.info("exiting...")
        return UserAbort.exit_status
    except ImagerError as error:
        log.error(str(error))
        return error.exit_status
    except KeyboardInterrupt:
        log.warning("interrupted")
        return 128 + signal.SIGINT


if __name__ == "__main__":
    raise SystemExit(main())
