#!/usr/bin/env python3
import contextlib
import os
from pathlib import Path

import psutil

from scripts.utils import API_PID_FILE, REPO_ROOT, logger


def stop_by_pid_file(path: Path) -> bool:
    """PIDファイルのプロセスを終了する. 終了させたら True."""
    if not path.exists():
        return False
    stopped = False
    try:
        pid = int(path.read_text(encoding="ascii").strip())
        proc = psutil.Process(pid)
        proc.terminate()
        stopped = True
    except ValueError:
        logger.warning(f"PIDファイルが不正です: {path}")
    except psutil.NoSuchProcess:
        logger.info("すでに停止済みです")
    with contextlib.suppress(OSError):
        path.unlink(missing_ok=True)
    return stopped


def main() -> int:
    os.chdir(REPO_ROOT)

    logger.info("============== Flowstate 停止中 ================")

    if stop_by_pid_file(API_PID_FILE):
        logger.info("API Server を停止しました")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
