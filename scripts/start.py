#!/usr/bin/env python3
"""Flowstate API launcher. Run with ``python -m scripts.start``."""

import os
import subprocess
from pathlib import Path

from scripts.utils import (
    API_HOST,
    API_PID_FILE,
    API_PORT,
    LOG_DIR,
    REPO_ROOT,
    http_ok,
    load_local_env,
    logger,
    run_command,
    wait_http,
)


def background_popen(
    cmd: list[str], stdout_path: Path, stderr_path: Path, env: dict[str, str]
) -> subprocess.Popen[bytes]:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    with (
        stdout_path.open("ab", buffering=0) as stdout_f,
        stderr_path.open("ab", buffering=0) as stderr_f,
    ):
        return subprocess.Popen(  # noqa: S603
            cmd,
            cwd=str(REPO_ROOT),
            stdout=stdout_f,
            stderr=stderr_f,
            env=env,
            start_new_session=True,
        )


def uvicorn_command(host: str = API_HOST, port: int = API_PORT) -> list[str]:
    return [
        "uv",
        "run",
        "uvicorn",
        "src.api.main:app",
        "--port",
        str(port),
        "--host",
        host,
    ]


def start_api(env: dict[str, str]) -> int:
    proc = background_popen(
        uvicorn_command(),
        stdout_path=LOG_DIR / "api.out.log",
        stderr_path=LOG_DIR / "api.err.log",
        env=env,
    )
    API_PID_FILE.write_text(str(proc.pid), encoding="ascii")
    if wait_http(f"http://{API_HOST}:{API_PORT}/health", attempts=30):
        logger.info(f"API Server: http://{API_HOST}:{API_PORT} が起動 (PID {proc.pid})")
    else:
        logger.warning("FastAPI が応答しません ./log/ 以下を見て")
    return proc.pid


def check_llm_server(llm_url: str | None) -> bool:
    """推論APIに到達できるか. 未設定ならAIなしモード."""
    if not llm_url:
        logger.info("LLM_URL 未設定: ルールベースの介入で動作します")
        return False
    if http_ok(f"{llm_url.rstrip('/')}/v1/models"):
        logger.info(f"LLM server: {llm_url} に接続できます")
        return True
    logger.warning(f"LLM server: {llm_url} に接続できません")
    return False


def main() -> int:
    os.chdir(REPO_ROOT)

    logger.info("================ Flowstate Starting up... ===============")

    if not load_local_env():
        logger.warning(".env.local が見つかりません (環境変数のみで起動)")

    child_env = os.environ.copy()
    child_env["PYTHONPATH"] = str(REPO_ROOT)

    run_command(["uv", "sync", "--dev"])

    start_api(child_env)
    check_llm_server(os.environ.get("LLM_URL"))

    logger.info("\n============== Flowstate is now running! =================\n")
    logger.info("Logs: ./log/api.log")
    logger.info("Stop: python -m scripts.stop")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
