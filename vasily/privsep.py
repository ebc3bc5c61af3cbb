"""Privilege separation.

When raw sockets are needed, the program re-runs itself as a privileged
helper and talks to it over pipes, while the main process gives up its
privileges. Platforms with unprivileged ICMP sockets need none of this.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import threading
from typing import Callable, IO, Optional, Sequence

from . import backend

log = logging.getLogger(__name__)

START_PRIV_FLAG = "[privileged]"
RAW_SOCKETS = False
_UNPRIVILEGED_PLATFORMS = ("linux", "darwin")


def _platform_name() -> str:
    for name in _UNPRIVILEGED_PLATFORMS:
        if sys.platform.startswith(name):
            return name
    return sys.platform


def use_privsep(raw_sockets: bool = False) -> bool:
    """Report whether a privileged helper is needed.

    Exits with status 1 when running setuid on a platform that does not
    need it.
    """
    platform = _platform_name()
    if raw_sockets or platform not in _UNPRIVILEGED_PLATFORMS:
        return True
    if os.getuid() != os.geteuid():
        program = sys.argv[0] if sys.argv else "vasily"
        sys.stderr.write(
            "Error: running with setuid.\n\n"
            f"This is unnecessary and unsafe on {platform}. Please remove the setuid bit\n"
            "using something like:\n\n"
            f"    sudo chmod u-s {program}\n"
        )
        sys.exit(1)
    return False


def drop_privileges() -> None:
    """Give up setuid privileges for good; raise if they cannot be dropped."""
    uid = os.getuid()
    euid = os.geteuid()
    if uid == euid:
        log.info("Privilege drop impossible: uid (%d) = euid (%d)", uid, euid)
        return

    try:
        os.setuid(uid)
    except OSError as err:
        raise OSError(f"setuid: {err}") from err

    _check_dropped()

    try:
        os.seteuid(0)
    except OSError:
        pass
    else:
        raise PermissionError("unexpectedly able to regain root")

    _check_dropped()


def _check_dropped() -> None:
    uid, euid = os.getuid(), os.geteuid()
    if uid != euid:
        raise PermissionError(f"failed to drop privileges: uid ({uid}) != euid ({euid})")


def _run_privileged_server() -> None:
    from .server import Server

    log.info("Starting privileged server.")
    server = Server(sys.stdin.buffer, sys.stdout.buffer, sys.exit)
    try:
        server.run()
    except Exception:  # noqa: BLE001 - any bad input ends the helper
        log.exception("Privileged server error")
        sys.exit(1)
    sys.exit(0)


def _stderr_logger(stream: IO[bytes]) -> None:
    for line in stream:
        log.info("privsep: %s", line.decode("utf-8", "replace").rstrip("\n"))


def _watchdog(proc: subprocess.Popen, waited: threading.Event) -> None:
    try:
        if proc.wait() != 0:
            log.critical("Privsep server exited with status %d", proc.returncode)
            os._exit(1)
    finally:
        waited.set()


def initialize(argv: Optional[Sequence[str]] = None) -> Callable[[], None]:
    """Set up privilege separation; call before anything else.

    In the helper process this runs the server and exits. Otherwise it
    returns a function that shuts the helper down.
    """
    argv = list(sys.argv if argv is None else argv)
    if not use_privsep(RAW_SOCKETS):
        return lambda: None

    if len(argv) == 2 and argv[1] == START_PRIV_FLAG:
        _run_privileged_server()

    drop_privileges()

    from .client import Client

    executable = os.path.abspath(argv[0]) if argv else sys.executable
    proc = subprocess.Popen(
        [executable, START_PRIV_FLAG],
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env={},
        bufsize=0,
    )
    threading.Thread(target=_stderr_logger, args=(proc.stderr,), daemon=True).start()
    waited = threading.Event()
    threading.Thread(target=_watchdog, args=(proc, waited), daemon=True).start()

    client = Client(proc.stdout, proc.stdin)
    backend.use_privsep(client)

    def cleanup() -> None:
        try:
            client.shutdown()
        except OSError as err:
            log.warning("Error shutting down privsep: %s", err)
            try:
                proc.kill()
            except OSError as kill_err:
                log.warning("Error killing privsep: %s", kill_err)
        try:
            client.close()
        except OSError as err:
            log.warning("Error closing privsep client: %s", err)
        waited.wait()

    return cleanup