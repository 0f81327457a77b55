"""External process runners.

This module manages the command line tools a run shells out to:
- balena CLI: login, push to the builders, release finalize
- git: fetch, checkout, remote branch lookup
- Timeout enforcement and stdout/stderr streaming
- Termination of the child process on cancellation
"""

from .balena_cli import BalenaCLI, build_push_args, parse_release_id
from .git import GitRunner
from .process import ProcessResult, ProcessRunner

__all__ = [
    "BalenaCLI",
    "GitRunner",
    "ProcessResult",
    "ProcessRunner",
    "build_push_args",
    "parse_release_id",
]
