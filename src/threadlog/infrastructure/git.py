"""Git runner: Protocol + subprocess implementation + scripted double for tests."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from threadlog.domain.errors import GitCommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GitOutput:
    returncode: int
    stdout: str
    stderr: str


@runtime_checkable
class GitRunner(Protocol):
    """Protocol for running git in the state repository. Implement with subprocess or a fake for tests."""

    async def run(self, *args: str, check: bool = True) -> GitOutput:
        """
        Run `git <args>`. With check=True a non-zero exit raises GitCommandError;
        otherwise the output is returned whatever the exit code.
        """
        ...


class SubprocessGit:
    """Runs the git binary in `root` via asyncio subprocesses."""

    def __init__(self, root: Path, executable: str = "git") -> None:
        self.root = Path(root)
        self._executable = executable

    async def run(self, *args: str, check: bool = True) -> GitOutput:
        proc = await asyncio.create_subprocess_exec(
            self._executable,
            *args,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, err = await proc.communicate()
        result = GitOutput(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )
        logger.debug("git %s -> %d", " ".join(args), result.returncode)
        if check and result.returncode != 0:
            raise GitCommandError(list(args), result.returncode, result.stdout, result.stderr)
        return result


class ScriptedGit:
    """Implements GitRunner with scripted outputs per subcommand for tests. No subprocess."""

    def __init__(
        self,
        responses: dict[str, list[GitOutput]] | None = None,
        head: str = "0" * 40,
    ) -> None:
        self.responses = {name: list(outs) for name, outs in (responses or {}).items()}
        self.head = head
        self.calls: list[tuple[str, ...]] = []

    @property
    def commands(self) -> list[str]:
        return [call[0] for call in self.calls]

    async def run(self, *args: str, check: bool = True) -> GitOutput:
        self.calls.append(args)
        queue = self.responses.get(args[0])
        if queue:
            out = queue.pop(0)
        elif args[0] == "rev-parse":
            out = GitOutput(0, self.head + "\n", "")
        elif args[0] == "diff" and "--quiet" in args:
            # Something is staged unless scripted otherwise.
            out = GitOutput(1, "", "")
        else:
            out = GitOutput(0, "", "")
        if check and out.returncode != 0:
            raise GitCommandError(list(args), out.returncode, out.stdout, out.stderr)
        return out
