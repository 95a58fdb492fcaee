import logging
from collections import deque
from pathlib import Path

__all__ = ["RecentLogHandler", "logger", "setup_logging"]

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("flowstate")


class RecentLogHandler(logging.Handler):
    """直近のログ行をメモリに保持する (モニタリングAPI用)."""

    def __init__(self, buffer: deque[str]) -> None:
        super().__init__()
        self.buffer = buffer

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(self.format(record))
        except Exception:  # noqa: BLE001
            self.handleError(record)


def setup_logging(
    log_dir: str | Path = "./log",
    recent: deque[str] | None = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """"flowstate" ロガーにファイル・コンソール出力を設定する.

    2回目以降の呼び出しでは handler を追加しない。
    """
    if logger.handlers:
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.FileHandler(log_path / "api.log", encoding="utf-8"),
        logging.StreamHandler(),
    ]
    if recent is not None:
        handlers.append(RecentLogHandler(recent))

    logger.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
