"""GitHub Actions runtime integration.

Step outputs are appended to the file named by GITHUB_OUTPUT; failures
and warnings are reported with workflow commands (`::error::` and
friends) printed to stdout, which the runner turns into annotations.

See: https://docs.github.com/actions/using-workflows/workflow-commands-for-github-actions
"""

import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def escape_workflow_command(value: Any) -> str:
    """Escape a string for use in a workflow command message."""
    if value is None:
        return ""
    return str(value).replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def set_failed(message: str) -> None:
    """Report the run as failed with an error annotation."""
    print(f"::error::{escape_workflow_command(message)}", flush=True)


def redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


class ActionOutputs:
    """Writes step outputs to the GITHUB_OUTPUT file.

    Values containing newlines use the heredoc form
    `name<<DELIMITER ... DELIMITER`. Every value is also kept in
    `values`, in the order it was set.

    Attributes:
        output_path: Path of the outputs file, or None outside Actions.
        values: Outputs set so far.
    """

    def __init__(self, output_path: Optional[str] = None):
        self.output_path = output_path
        self.values: Dict[str, str] = {}

    def set_output(self, name: str, value: Any) -> None:
        text = "" if value is None else str(value)
        self.values[name] = text

        if not self.output_path:
            logger.info("Output %s=%s (GITHUB_OUTPUT not set)", name, text)
            return

        if "\n" in text or "\r" in text:
            delimiter = f"ghadelimiter_{uuid.uuid4()}"
            entry = f"{name}<<{delimiter}\n{text}\n{delimiter}\n"
        else:
            entry = f"{name}={text}\n"

        with Path(self.output_path).open("a", encoding="utf-8") as f:
            f.write(entry)
        logger.debug("Set output %s", name, extra={"output": name})


class WorkflowCommandFormatter(logging.Formatter):
    """Formatter that turns warnings and errors into annotations.

    WARNING and above become `::warning::` / `::error::` commands and
    DEBUG records become `::debug::` so the runner only shows them when
    step debugging is enabled. INFO records use the plain format.
    """

    def __init__(self, fmt: str = LOG_FORMAT):
        super().__init__(fmt)

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        message = record.getMessage()
        # super().format() fills exc_text when the record carries exc_info
        if record.exc_text:
            message = f"{message}\n{record.exc_text}"
        if record.levelno >= logging.ERROR:
            return f"::error::{escape_workflow_command(message)}"
        if record.levelno >= logging.WARNING:
            return f"::warning::{escape_workflow_command(message)}"
        if record.levelno <= logging.DEBUG:
            return f"::debug::{escape_workflow_command(text)}"
        return text


def configure_logging(level: str = "INFO", actions: bool = False) -> None:
    """Configure root logging for a run.

    Args:
        level: Log level name (e.g., "INFO", "DEBUG").
        actions: Whether the run is inside GitHub Actions; enables
                 workflow command formatting.
    """
    handler = logging.StreamHandler(sys.stdout)
    if actions:
        handler.setFormatter(WorkflowCommandFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )
