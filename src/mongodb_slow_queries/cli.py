"""
Command-line entry point for the MongoDB slow queries plugin.

Exit status is 0 on success and 1 on any configuration or collection
failure, with a message on stderr.
"""

from __future__ import annotations

import sys

from mongodb_slow_queries.config import build_arg_parser, load_config
from mongodb_slow_queries.errors import InvalidArgumentError, PluginError
from mongodb_slow_queries.logging import get_logger, setup_logging
from mongodb_slow_queries.plugin import SlowQueryPlugin

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """
    Run the plugin once.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Process exit status.
    """
    try:
        config = load_config(cli_args=argv)
    except InvalidArgumentError as e:
        print(e.message, file=sys.stderr)
        for error in e.details.get("errors", []):
            print(f"  {error['loc']}: {error['msg']}", file=sys.stderr)
        build_arg_parser().print_usage(sys.stderr)
        return 1

    setup_logging(config.logging)

    try:
        SlowQueryPlugin(config).run()
    except PluginError as e:
        logger.debug(
            "Collection failed",
            extra={"error_code": e.error_code, "details": e.details},
        )
        print(f"OutputValues: {e.message}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.exception("Unexpected error", extra={"error": str(e)})
        print(f"OutputValues: internal error: {e}", file=sys.stderr)
        return 1

    return 0
