"""Middleware that compiles JavaScript with Google Closure Compiler.

Recipe data maps an output file (relative to the target) to a task::

    {
      "build/app.js": {"sources": ["js/a.js", "js/b.js"], "options": [["compilation_level", "SIMPLE"]]},
      "build/main.js": {"input": "js/main.js", "paths": ["$GOOG", "js"]}
    }

A task with ``sources`` only runs the compiler jar directly. A task with an
``input`` entry point runs ``calcdeps.py`` in compiled mode, which resolves
dependencies from ``paths``; ``$GOOG`` stands for the Closure Library shipped
in the install root. Outputs are compiled one at a time, in recipe order.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from branch_deployer.core.exceptions import ConfigurationError, MiddlewareError
from branch_deployer.middleware.base import Done, resolve_in_target

logger = structlog.get_logger()

GOOG_PLACEHOLDER = "$GOOG"


class ClosureCompiler:
    def __init__(self, closure_root: Optional[str], java_bin: str = "java"):
        self.closure_root = Path(closure_root) if closure_root else None
        self.java_bin = java_bin

    @property
    def compiler_jar(self) -> Path:
        assert self.closure_root is not None
        return self.closure_root / "bin" / "compiler.jar"

    @property
    def calcdeps_script(self) -> Path:
        assert self.closure_root is not None
        return self.closure_root / "bin" / "calcdeps.py"

    async def __call__(self, branch: str, target_dir: Path, data: Any) -> Done:
        if self.closure_root is None:
            raise MiddlewareError("CLOSURE COMPILER: Closure root not defined", code="closure-compiler")

        if not data:
            logger.info("CLOSURE COMPILER: Nothing to compile")
            return Done()
        if not isinstance(data, dict):
            raise ConfigurationError("CLOSURE COMPILER: Recipe data must map outputs to tasks")

        for output, task in data.items():
            await self.compile_output(target_dir, output, task)
        return Done()

    async def compile_output(self, target_dir: Path, output: str, task: Any) -> None:
        if not isinstance(task, dict):
            raise ConfigurationError(f"CLOSURE COMPILER: Task for {output} must be an object")

        sources: List[str] = list(task.get("sources") or [])
        options = self._normalize_options(task.get("options"), output)
        out_path = resolve_in_target(target_dir, output, "CLOSURE COMPILER")
        out_path.parent.mkdir(parents=True, exist_ok=True)

        entry = task.get("input")
        if entry:
            options.extend(("js", source) for source in sources)
            cmd = self.build_calcdeps_command(target_dir, entry, list(task.get("paths") or []), options)
            returncode, log = await self._exec(cmd, stdout_path=out_path)
        else:
            cmd = self.build_compiler_command(target_dir, sources, options, out_path)
            returncode, log = await self._exec(cmd)

        if returncode != 0:
            logger.error("CLOSURE COMPILER: Failed to compile", output=str(out_path), log=log)
            if entry:
                # calcdeps writes through stdout; drop the partial file
                out_path.unlink(missing_ok=True)
            raise MiddlewareError(
                f"CLOSURE COMPILER: Failed to compile to {output} (exit code {returncode})",
                code="closure-compiler",
            )
        logger.info("CLOSURE COMPILER: Successfully compiled", output=str(out_path))

    def build_compiler_command(
        self,
        root: Path,
        sources: Sequence[str],
        options: Sequence[Tuple[str, str]],
        out_path: Path,
    ) -> List[str]:
        cmd = [self.java_bin, "-jar", str(self.compiler_jar)]
        for source in sources:
            cmd += ["--js", str((root / source).resolve())]
        cmd += ["--js_output_file", str(out_path)]
        for flag, value in options:
            cmd += [f"--{flag}", value]
        return cmd

    def build_calcdeps_command(
        self,
        root: Path,
        entry: str,
        paths: Sequence[str],
        options: Sequence[Tuple[str, str]],
    ) -> List[str]:
        assert self.closure_root is not None
        cmd = [
            str(self.calcdeps_script),
            "--output_mode", "compiled",
            "--compiler_jar", str(self.compiler_jar),
        ]
        for path in paths:
            if path == GOOG_PLACEHOLDER:
                resolved = self.closure_root / "goog"
            else:
                resolved = (root / path).resolve()
            cmd += ["--path", str(resolved)]
        cmd += ["--input", str(root / entry)]
        for flag, value in options:
            cmd += ["--compiler_flags", f"--{flag}={value}"]
        return cmd

    @staticmethod
    def _normalize_options(raw: Any, output: str) -> List[Tuple[str, str]]:
        """Accept options as a mapping or as a list of [flag, value] pairs."""
        if not raw:
            return []
        if isinstance(raw, dict):
            return [(str(k), str(v)) for k, v in raw.items()]
        if isinstance(raw, list):
            pairs = []
            for item in raw:
                if not isinstance(item, (list, tuple)) or len(item) != 2:
                    raise ConfigurationError(
                        f"CLOSURE COMPILER: Option {item!r} for {output} is not a [flag, value] pair"
                    )
                pairs.append((str(item[0]), str(item[1])))
            return pairs
        raise ConfigurationError(f"CLOSURE COMPILER: Options for {output} must be a list or object")

    async def _exec(self, cmd: Sequence[str], stdout_path: Optional[Path] = None) -> Tuple[int, str]:
        """Run one toolchain command; returns (exit code, captured stderr)."""
        logger.debug("CLOSURE COMPILER: Running", cmd=list(cmd))
        stdout_file = open(stdout_path, "wb") if stdout_path is not None else None
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=stdout_file if stdout_file is not None else asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                return 127, str(exc)
            _, stderr = await proc.communicate()
        finally:
            if stdout_file is not None:
                stdout_file.close()
        return proc.returncode, stderr.decode("utf-8", errors="replace")
