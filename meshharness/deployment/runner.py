"""Runs shell helpers shipped in the mesh release tree.

Setup calls scripts such as the webhook certificate generator. They run
from the release directory with the primary cluster's KUBECONFIG exported.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from loguru import logger

from meshharness.infra.k8s import CommandResult


class CommandRunner:
    """Executes commands with a fixed working directory and extra environment."""

    def __init__(self, working_dir: Path, env: Mapping[str, str] | None = None) -> None:
        self.working_dir = working_dir
        self.env = dict(env or {})

    def run(self, cmd: Sequence[str], *, cwd: Path | None = None) -> CommandResult:
        """Run `cmd` to completion; a missing executable is reported as exit 127."""
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            proc = subprocess.run(
                list(cmd),
                cwd=cwd or self.working_dir,
                capture_output=True,
                text=True,
                env={**os.environ, **self.env},
            )
        except OSError as e:
            return CommandResult(success=False, stderr=str(e), returncode=127)

        return CommandResult(
            success=proc.returncode == 0,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            returncode=proc.returncode,
        )

    def run_script(self, script: Path, args: Sequence[str] = ()) -> CommandResult:
        return self.run(["bash", str(script), *args])
