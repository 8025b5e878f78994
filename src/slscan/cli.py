"""
Command-line interface of the scanner.
"""

import argparse
import logging
import sys

from .config import read_configuration, write_configuration
from .errors import SLScanError
from .session import ScanSession

logger = logging.getLogger(__name__)

MENU = """
[S] run scanner
[B] scan background
[R] reset background
[C] camera calibration
[P] projector calibration
[A] camera and projector calibration (simultaneous)
[E] projector-camera extrinsic calibration
[ESC / q] exit
"""

EXIT_KEYS = ("\x1b", "esc", "q")


def _prompt(message):
    input("{} and press enter...".format(message))


def build_commands(session):
    """maps each menu key to a session command"""
    return {
        "s": session.run_scanner,
        "b": session.scan_background,
        "r": session.reset_background,
        "c": session.calibrate_camera,
        "p": session.calibrate_projector,
        "a": lambda: session.calibrate_projector(simultaneous=True),
        "e": session.calibrate_extrinsics,
    }


def command_loop(session, read_key=input):
    """
    reads keys until an exit key (or end of input) and runs the matching commands
    """
    commands = build_commands(session)
    while True:
        try:
            key = read_key(MENU).strip().lower()
        except EOFError:
            break
        if key in EXIT_KEYS:
            break
        if key not in commands:
            logger.warning("unknown command '%s'", key)
            continue
        if session.execute(commands[key]):
            logger.info("command '%s' finished", key)


def main(argv=None):
    """
    Entry point, returns the process exit code.

    Usage:
        slscan [config.xml] [--verbose]
    """
    parser = argparse.ArgumentParser(description="Structured light 3D scanner")
    parser.add_argument(
        "config",
        nargs="?",
        default="config.xml",
        help="Path to the configuration file (default: config.xml)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log debug information",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        params = read_configuration(args.config)
        session = ScanSession.open(params, prompt=_prompt)
    except SLScanError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    try:
        with session:
            command_loop(session)
    except SLScanError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    write_configuration(args.config, session.params)
    return 0


if __name__ == "__main__":
    sys.exit(main())
