"""Child-process helpers.

Every external tool the bundler relies on (``patchelf``, ``install_name_tool``,
``codesign``, ``ldconfig``) is invoked through :class:`ToolRunner`, which always
waits for the child, captures its output, and hands back a :class:`ToolResult`
instead of raising on a non-zero exit.
"""

from dataclasses import dataclass
import logging
import shutil
import subprocess


@dataclass(frozen=True, slots=True)
class ToolResult:
    """Outcome of one external tool invocation.

    :ivar command: The argv that was run.
    :ivar returncode: Exit status, or ``None`` if the process never started.
    :ivar stdout: Captured standard output.
    :ivar stderr: Captured standard error (or the OS error text).
    """

    command: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Human-readable summary suitable for a log line."""

        detail: str = self.stderr.strip() or self.stdout.strip()
        if self.returncode is None:
            status: str = "could not start"
        else:
            status = f"exit={self.returncode}"
        if len(detail) == 0:
            return f"{self.command[0]} {status}"
        return f"{self.command[0]} {status}: {detail}"


class ToolRunner:
    """Runs external tools as scoped, synchronous child processes."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        if logger is None:
            logger = logging.getLogger("native_bundler")
        self._logger: logging.Logger = logger

    def available(self, tool: str) -> bool:
        """Check whether ``tool`` can be found on ``PATH``.

        :param tool: Executable name.
        :returns: ``True`` if the tool is installed.
        """

        return shutil.which(tool) is not None

    def run(self, cmd: list[str]) -> ToolResult:
        """Run a command to completion and capture its output.

        :param cmd: Command argv.
        :returns: The structured result; never raises for tool failures.
        """

        if self._logger.isEnabledFor(logging.DEBUG) is True:
            self._logger.debug(f"native-bundler: running: {' '.join(cmd)}")

        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as e:
            return ToolResult(command=tuple(cmd), returncode=None, stdout="", stderr=str(e))

        return ToolResult(
            command=tuple(cmd),
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
