"""Launches fping and streams its diagnostic output line by line."""

import logging
import os
import shutil
import subprocess
from typing import Iterator, Mapping, Sequence

logger = logging.getLogger(__name__)

FPING_BINARY = "fping"

# fping flags for the tuning parameters; loop and timestamp take no value.
BACKOFF_FLAG = "-B"
RETRIES_FLAG = "-r"
TOS_FLAG = "-O"
SUMMARY_FLAG = "-Q"
PERIOD_FLAG = "-p"
LOOP_FLAG = "-l"
TIMESTAMP_FLAG = "-D"


class ProbeLaunchError(OSError):
    """The probing binary could not be found or started."""


def build_fping_args(
    hosts: Sequence[str],
    backoff: str = "1",
    retries: str = "0",
    tos: str = "0",
    summary: str = "10",
    period: str = "1000",
    custom: Mapping[str, str] | None = None,
) -> list[str]:
    """Build the fping argument list (without the binary).

    Custom flags replace a built-in flag with the same key. Flags whose value
    is empty are passed on their own.

    Examples:
        >>> build_fping_args(["a", "b"], custom={"-p": "500", "-4": ""})
        ['-B', '1', '-r', '0', '-O', '0', '-Q', '10', '-p', '500', '-l', '-D', '-4', 'a', 'b']
    """
    flags = {
        BACKOFF_FLAG: str(backoff),
        RETRIES_FLAG: str(retries),
        TOS_FLAG: str(tos),
        SUMMARY_FLAG: str(summary),
        PERIOD_FLAG: str(period),
        LOOP_FLAG: "",
        TIMESTAMP_FLAG: "",
    }
    for key, value in (custom or {}).items():
        flags[key] = "" if value is None else str(value)

    args = []
    for flag, value in flags.items():
        args.append(flag)
        if value != "":
            args.append(value)
    args.extend(hosts)
    return args


def locate_binary(binary: str | None = None) -> str:
    """Resolve the fping executable.

    Args:
        binary: Explicit path, or None to search PATH for ``fping``

    Raises:
        ProbeLaunchError: If no executable is found
    """
    if binary:
        if os.path.isfile(binary) and os.access(binary, os.X_OK):
            return binary
        raise ProbeLaunchError(f"fping binary not executable: {binary}")

    found = shutil.which(FPING_BINARY)
    if found is None:
        raise ProbeLaunchError(f"{FPING_BINARY} not found on PATH")
    return found


class ProcessSupervisor:
    """Runs fping and exposes its stderr as a stream of lines.

    fping writes its periodic summaries to stderr; stdout is discarded so
    that nothing else can fill a pipe.

    Usage:
        with ProcessSupervisor(args) as supervisor:
            for line in supervisor.lines():
                ...
    """

    def __init__(self, args: Sequence[str], binary: str | None = None, stop_timeout: float = 5.0):
        """Initialize the supervisor.

        Args:
            args: fping arguments, usually from build_fping_args()
            binary: Explicit fping path, or None to search PATH
            stop_timeout: Seconds to wait after terminate() before kill()
        """
        self.args = list(args)
        self.binary = binary
        self.stop_timeout = stop_timeout
        self._process: subprocess.Popen | None = None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    def start(self) -> None:
        """Start fping.

        Raises:
            ProbeLaunchError: If fping cannot be located or started
        """
        if self._process is not None:
            raise RuntimeError("fping already started")

        cmd = [locate_binary(self.binary), *self.args]
        logger.debug("Starting probe process: %s", " ".join(cmd))

        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                shell=False,
            )
        except OSError as e:
            raise ProbeLaunchError(f"Unable to start {cmd[0]}: {e}") from e

        logger.info("fping started: pid=%d", self._process.pid)

    def lines(self) -> Iterator[str]:
        """Yield diagnostic lines in order until fping exits.

        Starts the process if needed. Undecodable bytes become U+FFFD so one
        bad line cannot end the stream. Read errors on the pipe propagate.
        """
        if self._process is None:
            self.start()

        process = self._process
        for line in process.stderr:
            yield line.rstrip("\r\n")

        returncode = process.wait()
        logger.info("fping exited: returncode=%s", returncode)

    def stop(self) -> None:
        """Terminate fping if it is still running."""
        process = self._process
        if process is None or process.poll() is not None:
            return

        logger.debug("Terminating fping: pid=%d", process.pid)
        process.terminate()
        try:
            process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.warning("fping ignored SIGTERM, killing: pid=%d", process.pid)
            process.kill()
            process.wait()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        if self._process is not None and self._process.stderr is not None:
            self._process.stderr.close()
