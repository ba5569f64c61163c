"""Target-directory helpers: working-tree change count and project checks."""

import logging
import os
import subprocess

from ralph_controller.models.config import RalphConfig
from ralph_controller.models.loop import ProjectStructure

logger = logging.getLogger(__name__)

GIT_STATUS_TIMEOUT_SECONDS = 30


def count_modified_files(directory: str) -> int:
    """Number of entries reported by ``git status --porcelain`` in ``directory``.

    Returns 0 when git is missing, the directory is not a repository, or the
    command fails; the count is only a progress signal.
    """
    try:
        completed = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=directory,
            capture_output=True,
            text=True,
            timeout=GIT_STATUS_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"git status failed in {directory}: {e}")
        return 0

    if completed.returncode != 0:
        logger.debug(f"git status exited with {completed.returncode} in {directory}")
        return 0

    return len([line for line in completed.stdout.split("\n") if line.strip()])


def validate_project(config: RalphConfig) -> ProjectStructure:
    """Check which of the standard project files exist in the target directory."""
    structure = ProjectStructure(
        target_directory=config.target_directory,
        has_agents_md=os.path.isfile(config.agents_file_path),
        has_specs_directory=os.path.isdir(config.specs_directory_path),
        has_prompt_md=os.path.isfile(config.prompt_file_path),
        has_implementation_plan=os.path.isfile(config.plan_file_path),
    )
    if not structure.is_complete:
        logger.info(f"Project in {config.target_directory} is missing: {', '.join(structure.missing_items)}")
    return structure
