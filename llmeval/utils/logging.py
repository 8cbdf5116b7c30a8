"""Shared logging setup for the CLI and scripts."""

from __future__ import annotations

import logging
from pathlib import Path


def setup_logging(verbose: bool = False, *, log_file: Path | str | None = None) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbose: If True, set DEBUG level; otherwise WARNING, so log lines do
            not interleave with streamed output.
        log_file: Optional file that also receives log records.
    """
    level = logging.DEBUG if verbose else logging.WARNING

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        try:
            handlers.append(logging.FileHandler(log_file, mode="a"))
        except OSError as exc:
            logging.getLogger(__name__).warning("Could not open log file %s: %s", log_file, exc)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    # huggingface_hub is chatty at INFO about cache hits
    logging.getLogger("huggingface_hub").setLevel(max(level, logging.WARNING))
