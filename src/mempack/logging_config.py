"""Logging setup for the command line and the MCP server.

Library chatter (HuggingFace progress bars, model loading, HTTP client
debug lines) is suppressed unless verbose output is requested.
"""

import logging
import os
import sys
import warnings

QUIET_LOGGERS = ("transformers", "sentence_transformers", "urllib3", "httpx", "huggingface_hub")


def configure_quiet_mode(quiet: bool = True) -> None:
    """Silence noisy third-party loggers and warnings.

    Args:
        quiet: If False, leave library verbosity untouched.
    """
    if not quiet:
        return
    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    os.environ.setdefault("TRANSFORMERS_VERBOSITY", "error")
    os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
    warnings.filterwarnings("ignore", category=DeprecationWarning)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def configure_logging(verbose: bool = False, stream=None) -> None:
    """Configure the root logger.

    Plain ``%(message)s`` lines at INFO by default; ``verbose`` switches to
    DEBUG with timestamps and logger names.
    """
    stream = stream or sys.stderr
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
            stream=stream,
            force=True,
        )
        logging.getLogger("mempack").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s", stream=stream, force=True)
        configure_quiet_mode()
