"""Console entry point for ``tidal-queue`` and ``python -m tidal_queue``."""

import logging
import sys

from rich.console import Console

from tidal_queue.cli.app import app
from tidal_queue.cli.formatters import format_error_with_suggestions
from tidal_queue.exceptions import TidalQueueError

log = logging.getLogger("tidal_queue")

# Conventional exit status for a process stopped by SIGINT
EXIT_INTERRUPTED = 130


def main() -> None:
    """Runs the CLI and turns anything that escapes it into an exit status."""
    errors = Console(stderr=True)
    try:
        app()
    except KeyboardInterrupt:
        errors.print(
            "\n[yellow]Interrupted. Queued jobs stay in the store and resume "
            "with the next worker.[/yellow]"
        )
        sys.exit(EXIT_INTERRUPTED)
    except TidalQueueError as e:
        errors.print(format_error_with_suggestions(e))
        sys.exit(1)
    except Exception as e:
        log.debug("Unhandled error", exc_info=True)
        errors.print(format_error_with_suggestions(e, {"type": "Unexpected"}))
        sys.exit(1)


if __name__ == "__main__":
    main()
