import contextlib
import sys
import time
from typing import Any, Generator

import termcolor
from loguru import logger


@contextlib.contextmanager
def stopwatch(label: str = "unlabeled block") -> Generator[None, None, None]:
    """Context manager for measuring runtime."""
    start_time = time.time()
    print("\n========")
    print(f"Running ({label})")
    yield
    print(f"{termcolor.colored(str(time.time() - start_time), attrs=['bold'])} seconds")
    print("========")


def set_log_level(level: str = "INFO", sink: Any = None) -> None:
    """Route solver logs to `sink` (stderr by default) at `level`, replacing
    existing handlers."""
    logger.remove()
    logger.add(sys.stderr if sink is None else sink, level=level)
