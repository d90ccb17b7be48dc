#!/usr/bin/env python3
"""
Idle Auto-Stop
--------------

Powers the instance off once nobody has had a terminal session open for the
idle threshold. Installed to /opt/auto-stop.py by instance_bootstrap and run
from root's crontab every five minutes.

Each run looks at `who`:
  • sessions open          -> record now as the last activity
  • no sessions, no record -> record now and wait for the next run
  • no sessions, idle long -> shutdown -h now
  • otherwise              -> nothing

Only the standard library is used so cron can run it with the system python3.
"""

import argparse
import logging
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional, Union

IDLE_FILE: str = "/tmp/last-active"
IDLE_THRESHOLD: int = 1800  # 30 minutes
LOG_FILE: str = "/var/log/auto-stop.log"

ACTION_REFRESHED: str = "refreshed"
ACTION_SEEDED: str = "seeded"
ACTION_SHUTDOWN: str = "shutdown"
ACTION_IDLE: str = "idle"


def setup_logging(log_file: str = LOG_FILE) -> None:
    """Log to the given file, or to stderr when it can't be opened."""
    fmt = "%(asctime)s - %(levelname)s - %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    try:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file)
    except OSError:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt, datefmt))
    logging.basicConfig(level=logging.INFO, handlers=[handler])


def count_sessions(who_output: Optional[str] = None) -> int:
    """Number of pseudo-terminal logins (SSH, tmux attach, etc.)."""
    if who_output is None:
        result = subprocess.run(["who"], capture_output=True, text=True, check=False)
        who_output = result.stdout
    return sum(1 for line in who_output.splitlines() if "pts/" in line)


def read_last_active(idle_file: Union[str, Path]) -> Optional[int]:
    try:
        return int(Path(idle_file).read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


def write_last_active(idle_file: Union[str, Path], now: int) -> None:
    """Replace the timestamp file atomically, whoever owns the old one."""
    path = Path(idle_file)
    fd, tmp = tempfile.mkstemp(prefix=".last-active.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w") as f:
            f.write(f"{now}\n")
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except OSError:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


def check_idle(
    sessions: int,
    last_active: Optional[int],
    now: int,
    threshold: int = IDLE_THRESHOLD,
) -> str:
    """Decide what one invocation should do. No side effects."""
    if sessions > 0:
        return ACTION_REFRESHED
    if last_active is None:
        return ACTION_SEEDED
    if now - last_active >= threshold:
        return ACTION_SHUTDOWN
    return ACTION_IDLE


def power_off() -> None:
    subprocess.run(["shutdown", "-h", "now"], check=True)


def run_check(
    idle_file: Union[str, Path] = IDLE_FILE,
    threshold: int = IDLE_THRESHOLD,
    session_counter: Callable[[], int] = count_sessions,
    clock: Callable[[], float] = time.time,
    shutdown: Callable[[], None] = power_off,
) -> str:
    now = int(clock())
    sessions = session_counter()
    last_active = read_last_active(idle_file)
    action = check_idle(sessions, last_active, now, threshold)

    if action in (ACTION_REFRESHED, ACTION_SEEDED):
        write_last_active(idle_file, now)
        logging.info(f"{sessions} active session(s); last activity set to {now} ({action})")
    elif action == ACTION_SHUTDOWN:
        logging.warning(
            f"No sessions for {now - last_active}s (threshold {threshold}s); shutting down"
        )
        shutdown()
    else:
        logging.info(f"No sessions, idle for {now - last_active}s of {threshold}s")
    return action


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="auto-stop", description="Power off the instance after a period with no sessions."
    )
    parser.add_argument("--idle-file", default=IDLE_FILE, help="Last-activity timestamp file")
    parser.add_argument(
        "--threshold", type=int, default=IDLE_THRESHOLD, help="Idle seconds before shutdown"
    )
    parser.add_argument("--log-file", default=LOG_FILE, help="Where to log each check")
    args = parser.parse_args(argv)

    setup_logging(args.log_file)
    run_check(idle_file=args.idle_file, threshold=args.threshold)
    return 0


if __name__ == "__main__":
    sys.exit(main())
