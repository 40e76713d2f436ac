"""Logging initialization using loguru."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

PROJECT_ROOT = Path(__file__).parent
DEFAULT_LOG_DIR = PROJECT_ROOT / "logs"


def init_logging(log_dir: Optional[str] = None, verbose: bool = False) -> Path:
    """Send diagnostics to a rotating file; only warnings reach the terminal."""
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        str(log_path / "pipeline_{time:YYYYMMDD}.log"),
        rotation="10 MB",
        retention="10 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        level="DEBUG" if verbose else "INFO",
    )
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")
    return log_path


def find_latest_log_file(log_dir: Optional[str] = None) -> Optional[Path]:
    """Return the most recently modified pipeline log, if any."""
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    if not log_path.exists():
        return None
    log_files = list(log_path.glob("pipeline_*.log"))
    if not log_files:
        return None
    return max(log_files, key=lambda p: p.stat().st_mtime)
