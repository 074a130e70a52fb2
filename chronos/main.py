"""
Chronos command line entry point.

    chronos IMAGE [-o timeline.html] [--sqlite DB] [--config cfg.json]
                  [--security-log F] [--system-log F] [--prefetch PATH ...]
                  [--mft-limit N] [--workers N] [--timezone TZ]
                  [--log-file F] [-v] [--no-progress]

Exit codes: 0 when the report was written (even if some artifacts failed to
parse), 1 when the image or configuration is unusable, the build stops on an
error, or the report cannot be written, 2 for invalid arguments.
"""

import argparse
import sys
import time
from datetime import datetime
from typing import List, Optional

import colorama
from colorama import Fore, Style

from chronos import __version__
from chronos.config import ChronosConfig, ConfigError, LogLevel
from chronos.data.database_manager import export_timeline
from chronos.timeline.data.run_report import RunReport
from chronos.timeline.data.timeline_data_manager import TimelineDataManager
from chronos.timeline.rendering.html_renderer import render_html
from chronos.utils.error_handler import ChronosError, ErrorHandler, IoError

# Initialize colorama for cross-platform colored output
colorama.init()

# Color definitions
COLOR_SUCCESS = Fore.GREEN
COLOR_WARNING = Fore.YELLOW
COLOR_ERROR = Fore.RED
COLOR_INFO = Fore.CYAN
COLOR_HEADER = Fore.MAGENTA + Style.BRIGHT
COLOR_RESET = Style.RESET_ALL

EXIT_OK = 0
EXIT_FAILURE = 1


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chronos",
        description="Build a unified forensic timeline (MFT, event logs, prefetch) from a disk image",
    )
    parser.add_argument("image", help="Raw (.dd/.raw/.img) or EWF (.E01) disk image")
    parser.add_argument("-o", "--output", help="HTML report path (default: timeline.html)")
    parser.add_argument("--sqlite", metavar="DB", help="Also export the timeline to this SQLite database")
    parser.add_argument("--config", metavar="FILE", help="JSON configuration file")
    parser.add_argument("--security-log", metavar="FILE",
                        help="Standalone Security.evtx to use instead of the image's copy")
    parser.add_argument("--system-log", metavar="FILE",
                        help="Standalone System.evtx to use instead of the image's copy")
    parser.add_argument("--prefetch", metavar="PATH", nargs="+",
                        help="Standalone .pf files or directories to use instead of the image's Prefetch folder")
    parser.add_argument("--mft-limit", type=int, metavar="N", help="Maximum number of MFT records to process")
    parser.add_argument("--workers", type=int, metavar="N", help="Number of parser threads")
    parser.add_argument("--timezone", metavar="TZ", help="Add a local-time column for this timezone (e.g. Europe/Berlin)")
    parser.add_argument("--log-file", metavar="FILE", help="Also write a debug log to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on the console")
    parser.add_argument("--no-progress", action="store_true", help="Disable progress bars")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_config(args: argparse.Namespace) -> ChronosConfig:
    """
    Configuration file (if any) with command line flags applied on top.

    Raises:
        ConfigError: If the file or an overridden value is invalid
    """
    config = ChronosConfig.load(args.config) if args.config else ChronosConfig()
    return config.with_overrides(
        output_path=args.output,
        sqlite_path=args.sqlite,
        max_mft_records=args.mft_limit,
        workers=args.workers,
        display_timezone=args.timezone,
        log_file=args.log_file,
        log_level=LogLevel.DEBUG if args.verbose else None,
        show_progress=False if args.no_progress else None,
    )


def print_summary(events, report: RunReport, output_path: str, sqlite_path: Optional[str]):
    print(f"\n{COLOR_HEADER}{'=' * 60}{COLOR_RESET}")
    print(f"{COLOR_HEADER}Run report{COLOR_RESET}")
    for parser in report.parsers:
        color = COLOR_ERROR if parser.failed else (COLOR_WARNING if parser.capped else COLOR_INFO)
        print(f"{color}  {parser.summary()}{COLOR_RESET}")
    for note in report.notes:
        print(f"{COLOR_WARNING}  {note}{COLOR_RESET}")

    if events:
        print(f"{COLOR_INFO}Time span: {events[0].timestamp} -> {events[-1].timestamp}{COLOR_RESET}")
    print(f"{COLOR_SUCCESS}✓ {len(events):,} events written to {output_path}{COLOR_RESET}")
    if sqlite_path:
        print(f"{COLOR_SUCCESS}✓ SQLite export: {sqlite_path}{COLOR_RESET}")
    if report.failures:
        print(f"{COLOR_WARNING}! {len(report.failures)} artifact(s) could not be parsed{COLOR_RESET}")
    print(f"{COLOR_HEADER}{'=' * 60}{COLOR_RESET}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    args = build_argument_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ConfigError as e:
        print(f"{COLOR_ERROR}chronos: configuration error: {e}{COLOR_RESET}", file=sys.stderr)
        return EXIT_FAILURE

    error_handler = ErrorHandler()
    error_handler.setup_logging(config.log_level.value, config.log_file)
    logger = error_handler.logger

    start_time = time.time()
    print(f"{COLOR_HEADER}Chronos {__version__} - timeline of {args.image} "
          f"({datetime.now().strftime('%Y-%m-%d %H:%M:%S')}){COLOR_RESET}")

    manager = TimelineDataManager(config)
    try:
        events, report = manager.build(
            args.image,
            security_log=args.security_log,
            system_log=args.system_log,
            prefetch_paths=args.prefetch,
        )
    except ChronosError as e:
        error_handler.handle_error(e, "Cannot open image" if isinstance(e, IoError) else "Timeline build failed")
        print(f"{COLOR_ERROR}chronos: {e}{COLOR_RESET}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        output_path = render_html(events, report, config.output_path, config.display_timezone)
        if config.sqlite_path:
            export_timeline(events, report, config.sqlite_path)
    except ChronosError as e:
        error_handler.handle_error(e, "Cannot write output")
        print(f"{COLOR_ERROR}chronos: {e}{COLOR_RESET}", file=sys.stderr)
        return EXIT_FAILURE

    print_summary(events, report, output_path, config.sqlite_path)
    logger.debug(f"Memory by stage: {manager.memory_monitor.get_memory_stats()}")
    print(f"{COLOR_SUCCESS}✓ Completed in {time.time() - start_time:.2f}s{COLOR_RESET}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
