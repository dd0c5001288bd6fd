import argparse
import sys

from loguru import logger

from do_export.__version__ import __version__
from do_export.config.settings import load_settings, success_marker_path
from do_export.logging import setup_logging
from do_export.pipeline import ExportPipeline, clear_success_marker
from do_export.storage.exceptions import ExportError, PipelineInterrupted

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_KEYBOARD_INTERRUPT = 130


def build_parser():
    parser = argparse.ArgumentParser(
        prog="do-export",
        description=(
            "Export a block device to a raw, qcow2, vmdk or vhd image and "
            "optionally ship it to a remote host."
        ),
        epilog=(
            "Every option can also be set through the environment (DEVICE, "
            "OUTPUT_DIR, FORMAT, COMPRESS, VERIFY, REMOTE_TARGET, REMOTE_PATH, "
            "SUCCESS_MARKER, DO_EXPORT_LOG_DIR) or a JSON settings file."
        ),
    )
    parser.add_argument("--device", help="Device to export (default: auto-detect)")
    parser.add_argument("--output-dir", help="Directory for the image files")
    parser.add_argument("--format", help="raw, qcow2, vmdk or vhd")
    parser.add_argument("--compress", metavar="yes|no", help="Compress the image")
    parser.add_argument("--verify", metavar="yes|no", help="Checksum and check the image")
    parser.add_argument("--remote-target", metavar="USER@HOST", help="Ship the image over rsync/ssh")
    parser.add_argument("--remote-path", help="Remote directory (default: ~)")
    parser.add_argument("--marker", help="Success marker written on completion")
    parser.add_argument("--log-dir", help="Also write rotated log files here")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw tool progress output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def overrides_from_args(args):
    return {
        "DEVICE": args.device,
        "OUTPUT_DIR": args.output_dir,
        "FORMAT": args.format,
        "COMPRESS": args.compress,
        "VERIFY": args.verify,
        "REMOTE_TARGET": args.remote_target,
        "REMOTE_PATH": args.remote_path,
        "SUCCESS_MARKER": args.marker,
        "DO_EXPORT_LOG_DIR": args.log_dir,
    }


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)

    try:
        overrides = overrides_from_args(args)
        clear_success_marker(success_marker_path(overrides=overrides))
        settings = load_settings(overrides=overrides)
        if settings.log_dir is not None:
            setup_logging(debug=args.debug, trace=args.trace, log_dir=settings.log_dir)
        logger.info(f"do-export v{__version__}")
        result = ExportPipeline(settings).run()
    except PipelineInterrupted as error:
        logger.error(f"Export failed: {error}")
        return 128 + error.signum
    except ExportError as error:
        logger.error(f"Export failed: {error}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.error("Export failed: interrupted")
        return EXIT_KEYBOARD_INTERRUPT

    logger.info(
        f"Finished in {result.elapsed_seconds:.0f}s: {result.artifact.name}"
    )
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
