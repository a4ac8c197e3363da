"""Process entrypoint: persist NDJSON log lines read from stdin.

Any structured logger that writes one JSON object per line can be piped in:

    my-service | LOGSINK_DATABASE=logs.db python src/main.py

Configuration comes from the environment (see `config.load_config`). The
sink's own diagnostics go to stderr so they never mix with the input stream.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TextIO

from config import SinkConfig, load_config
from logsink import BufferedLogSink, consume, read_lines

logger = logging.getLogger(__name__)


async def run(config: SinkConfig, stream: TextIO) -> None:
    """Pipe `stream` into an owned sink until end of input."""
    sink = BufferedLogSink.from_config(config)
    sink.start()
    await consume(read_lines(stream), sink)


def main() -> None:
    """CLI entrypoint for `python src/main.py`."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    logger.info("Writing logs to %s (%s)", config.database, config.backend)

    try:
        asyncio.run(run(config, sys.stdin))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
