from __future__ import annotations

import traceback
from dataclasses import dataclass


class BuildPipelineError(RuntimeError):
    """
    Base error. Every failure names the stage and the step it happened in.
    """

    def __init__(
        self, message: str, *, stage: str | None = None, step: str | None = None
    ) -> None:
        self.message = message
        self.stage = stage
        self.step = step
        super().__init__(self._render())

    def _render(self) -> str:
        where = "/".join(x for x in (self.stage, self.step) if x)
        return f"[{where}] {self.message}" if where else self.message


class PipelineDefinitionError(BuildPipelineError):
    """The pipeline definition itself is defective; nothing was executed"""


class InvalidParameterError(PipelineDefinitionError):
    """A parameter value cannot be coerced to its declared type"""


class ContractOverlapError(PipelineDefinitionError):
    """Two stages may write the same destination file"""


class UnresolvedParameterError(BuildPipelineError):
    """A stage references a parameter with no default and no override"""


class CommandFailedError(BuildPipelineError):
    """
    Base for failures of an external command (setup, fetch, build).
    Keeps the exit code and the tail of stderr for diagnosis.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        step: str | None = None,
        returncode: int | None = None,
        stderr_tail: str | None = None,
    ) -> None:
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        if returncode is not None:
            message = f"{message} (exit {returncode})"
        if stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message, stage=stage, step=step)


class SetupError(CommandFailedError):
    """A setup operation (repository registration, package install) failed"""


class SourceFetchError(CommandFailedError):
    """
    Source retrieval failed: network failure or revision not found.
    The only error a caller may reasonably retry.
    """


class BuildError(CommandFailedError):
    """The stage's build command exited non-zero"""


class ContractUnsatisfiedError(BuildPipelineError):
    """An artifact pattern matched zero files"""

    def __init__(self, message: str, *, stage: str, step: str, pattern: str) -> None:
        self.pattern = pattern
        super().__init__(message, stage=stage, step=step)


class MetadataError(BuildPipelineError):
    """Final image metadata (identity, labels) is malformed"""


class StageCancelled(BuildPipelineError):
    """The run was cancelled and this stage stopped between steps"""


@dataclass(frozen=True, slots=True)
class StageError:
    """
    A normalized error record for stage failures.
    """

    exc_type: str
    message: str
    stage: str | None
    step: str | None
    traceback: str


def stage_error_from_exc(exc: BaseException) -> StageError:
    return StageError(
        exc_type=type(exc).__name__,
        message=str(exc),
        stage=getattr(exc, "stage", None),
        step=getattr(exc, "step", None),
        traceback="".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        ),
    )
