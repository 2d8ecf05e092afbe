"""Library for issuing commands using asyncio and returning the result."""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass

from .exceptions import CommandException, GitOpsException, TransientInfraError

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)
_TIMEOUT = 60.0


# No public API
__all__: list[str] = []


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    exc: type[GitOpsException] = CommandException
    """Exception to throw in case of an error."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    timeout: float = _TIMEOUT
    """Seconds to wait before the command is considered hung."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        return self.string

    async def _run(self, stdin: bytes | None) -> bytes:
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        proc = await asyncio.create_subprocess_exec(
            *self.cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
        )
        out, err = await proc.communicate(stdin)
        if proc.returncode:
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            if out:
                errors.append(out.decode("utf-8"))
            if err:
                errors.append(err.decode("utf-8"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return out

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command, returning stdout."""
        _LOGGER.debug("Running command: %s", self)
        async with _SEM:
            try:
                return await asyncio.wait_for(self._run(stdin), self.timeout)
            except asyncio.TimeoutError as err:
                raise TransientInfraError(f"Command '{self}' timed out") from err


async def run(cmd: Command, stdin: bytes | None = None) -> str:
    """Run the specified command and return stdout."""
    out = await cmd.run(stdin)
    return out.decode("utf-8") if out else ""
