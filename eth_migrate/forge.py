"""Forge compile step.

- Compile the project smart contracts before migrating, using Foundry `forge build`

- See `Foundry book <https://book.getfoundry.sh/>`__ for more information.
"""

import logging
from pathlib import Path
from shutil import which
from subprocess import DEVNULL, PIPE

import psutil

logger = logging.getLogger(__name__)


#: Crash unless forge completes in 4 minutes
DEFAULT_TIMEOUT = 4 * 60


class ForgeFailed(Exception):
    """Forge command failed."""


def compile_contracts(
    project_folder: Path,
    build_directory: Path,
    force=False,
    timeout=DEFAULT_TIMEOUT,
) -> str:
    """Compile a Foundry project into the build directory.

    Assumes standard Foundry project layout with ``foundry.toml`` and ``src``.
    Artifacts land in ``<build_directory>/<File>.sol/<Contract>.json``.

    :param project_folder:
        Foundry project with ``foundry.toml``

    :param force:
        Recompile everything, not only changed files

    :return:
        Forge output

    :raise ForgeFailed:
        Compilation error
    """
    assert isinstance(project_folder, Path), f"Got {type(project_folder)}"
    assert isinstance(build_directory, Path), f"Got {type(build_directory)}"

    forge = which("forge")
    assert forge is not None, "No forge command in path, needed for compiling contracts"

    cmd_line = [forge, "build", "--root", str(project_folder), "--out", str(build_directory)]
    if force:
        cmd_line.append("--force")

    logger.info("Compiling contracts: %s", " ".join(cmd_line))

    proc = psutil.Popen(cmd_line, stdin=DEVNULL, stdout=PIPE, stderr=PIPE)
    result = proc.wait(timeout)

    output = proc.stdout.read().decode("utf-8") + proc.stderr.read().decode("utf-8")

    if result != 0:
        raise ForgeFailed(f"forge return code {result} when running: {' '.join(cmd_line)}\nOutput is:\n{output}")

    logger.debug("forge result:\n%s", output)
    return output
