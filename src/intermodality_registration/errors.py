"""Failure taxonomy shared by every pipeline component."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional


class PipelineError(Exception):
    """Base class for failures that end a run with a non-zero exit code."""


class ConfigurationError(PipelineError):
    """Invalid or missing input detected before any stage runs."""


class MissingBinaryError(ConfigurationError):
    """A required ANTs executable could not be found."""


class MissingInputError(PipelineError):
    """One or more referenced files are absent or unreadable.

    All offending paths are collected so the user sees every problem at once
    instead of fixing them one invocation at a time.
    """

    def __init__(self, problems: Iterable[tuple[str, Path | str]]):
        self.problems = [(label, Path(path)) for label, path in problems]
        lines = [f"{label}: {path}" for label, path in self.problems]
        super().__init__("missing or unreadable inputs:\n  " + "\n  ".join(lines))


class RegistrationFailure(PipelineError):
    """The registration service failed at a given stage; the chain is abandoned."""

    def __init__(self, stage_index: int, cause: object):
        self.stage_index = stage_index
        self.cause = cause
        super().__init__(f"registration stage {stage_index} failed: {cause}")


class CompositionFailure(PipelineError):
    """The subject->T1 and T1->template transforms could not be chained."""


class MissingTemplateTransform(CompositionFailure):
    """The T1->template transform prefix does not resolve to usable files."""

    def __init__(self, prefix: Path | str, reason: str):
        self.prefix = str(prefix)
        self.reason = reason
        super().__init__(f"T1->template transform '{prefix}' unusable: {reason}")


class PerImageResampleFailure(PipelineError):
    """A single auxiliary volume could not be resampled."""

    def __init__(self, role: str, path: Optional[Path], cause: object):
        self.role = role
        self.path = path
        self.cause = cause
        super().__init__(f"{role} ({path}): {cause}")


class ExternalCommandError(PipelineError):
    """An external executable exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, tail: str = ""):
        self.command = command
        self.returncode = returncode
        self.tail = tail
        message = f"{Path(command[0]).name} exited with status {returncode}"
        if tail:
            message += f": {tail}"
        super().__init__(message)


class TimeoutExceeded(PipelineError):
    """The configured wall-clock budget for the run was exhausted."""


class PipelineCancelled(PipelineError):
    """The run was cancelled (e.g. by a user interrupt)."""
