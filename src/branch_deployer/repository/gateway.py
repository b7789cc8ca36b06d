"""Repository gateway: the version-control operations the deployer relies on.

The engine only talks to the ``RepositoryGateway`` protocol. ``GitGateway`` is
the production implementation and shells out to ``git``; tests substitute an
in-memory fake.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import re
from collections import deque
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import structlog

from branch_deployer.core.exceptions import RepositoryError

logger = structlog.get_logger()

ProgressCallback = Callable[[str], None]

# Lines of git output kept for error reports
_TAIL_LINES = 20

_READ_SIZE = 64 * 1024
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class RepositoryGateway(Protocol):
    async def init(self, path: Path) -> None: ...

    async def add_remote(self, repo: Path, name: str, url: str) -> None: ...

    async def pull(
        self,
        repo: Path,
        remote: str,
        branch: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None: ...

    async def update_submodules(
        self,
        repo: Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None: ...

    async def list_branch_tips(self, repo: Path) -> Dict[str, str]: ...


class GitGateway:
    """Runs git commands as asyncio subprocesses."""

    def __init__(self, git_bin: str = "git"):
        self.git_bin = git_bin

    async def init(self, path: Path) -> None:
        await self._run(["init", "--quiet", str(path)], op="init")

    async def add_remote(self, repo: Path, name: str, url: str) -> None:
        await self._run(["-C", str(repo), "remote", "add", name, url], op="add_remote")

    async def pull(
        self,
        repo: Path,
        remote: str,
        branch: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        await self._run(
            ["-C", str(repo), "pull", "--ff-only", "--progress", remote, branch],
            op="pull",
            on_progress=on_progress,
        )

    async def update_submodules(
        self,
        repo: Path,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        await self._run(
            ["-C", str(repo), "submodule", "update", "--init", "--recursive"],
            op="update_submodules",
            on_progress=on_progress,
        )

    async def list_branch_tips(self, repo: Path) -> Dict[str, str]:
        lines = await self._run(
            [
                "-C",
                str(repo),
                "for-each-ref",
                "--format=%(refname:short) %(objectname)",
                "refs/heads",
            ],
            op="list_branch_tips",
        )
        tips: Dict[str, str] = {}
        for line in lines:
            line = line.strip()
            if not line:
                continue
            name, _, commit = line.rpartition(" ")
            if not name or not commit:
                raise RepositoryError(
                    f"Unexpected for-each-ref output: {line!r}", code="bad_ref_listing"
                )
            tips[name] = commit
        return tips

    async def _run(
        self,
        args: Sequence[str],
        *,
        op: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[str]:
        """Run git, streaming merged stdout/stderr line by line.

        Returns all output lines on success, raises RepositoryError otherwise.
        """
        cmd = [self.git_bin, *args]
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"

        logger.debug("Running git", op=op, cmd=cmd)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as exc:
            raise RepositoryError(f"git {op} could not be started: {exc}", code=op) from exc

        lines: List[str] = []
        tail: deque = deque(maxlen=_TAIL_LINES)

        def emit(line: str) -> None:
            if not line:
                return
            lines.append(line)
            tail.append(line)
            if on_progress is not None:
                on_progress(line)

        # Progress updates are separated by \r, not \n, so a long fetch never
        # fits the StreamReader line limit; read raw chunks instead.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        assert proc.stdout is not None
        try:
            while True:
                chunk = await proc.stdout.read(_READ_SIZE)
                if not chunk:
                    break
                pending += decoder.decode(chunk)
                *complete, pending = _LINE_BREAK.split(pending)
                for line in complete:
                    emit(line)
            emit(pending + decoder.decode(b"", final=True))
            returncode = await proc.wait()
        except (OSError, ValueError) as exc:
            raise RepositoryError(f"git {op} output could not be read: {exc}", code=op) from exc
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        if returncode != 0:
            output = "\n".join(tail)
            logger.error("git command failed", op=op, returncode=returncode, output=output)
            raise RepositoryError(
                f"git {op} failed with exit code {returncode}",
                code=op,
                returncode=returncode,
                stderr=output,
            )
        return lines
