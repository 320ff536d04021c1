"""
Error taxonomy for pipeline definition and image builds.

Every build failure aborts its pipeline; nothing here is retried.
"""
from typing import Optional

from .enums import FailureKind


class ImageToolError(Exception):
    """Base class for all imagetool errors"""


class PipelineDefinitionError(ImageToolError):
    """Raised when a pipeline definition or config file is invalid"""


class PipelineError(ImageToolError):
    """
    Base class for build failures.

    Carries enough context to report which pipeline, stage and instruction
    failed, along with the output the failing instruction produced.
    """

    kind = FailureKind.INSTRUCTION

    def __init__(
        self,
        message: str,
        pipeline: Optional[str] = None,
        stage: Optional[str] = None,
        instruction: Optional[str] = None,
        output: str = ""
    ):
        super().__init__(message)
        self.message = message
        self.pipeline = pipeline
        self.stage = stage
        self.instruction = instruction
        self.output = output

    def describe(self) -> str:
        """Human readable one-line location of the failure"""
        parts = []
        if self.pipeline:
            parts.append(f"pipeline={self.pipeline}")
        if self.stage:
            parts.append(f"stage={self.stage}")
        if self.instruction:
            parts.append(f"instruction={self.instruction}")
        location = " ".join(parts)
        return f"[{self.kind.value}] {self.message}" + (f" ({location})" if location else "")


class RetrievalError(PipelineError):
    """Source or base image could not be retrieved"""
    kind = FailureKind.RETRIEVAL


class CompilationError(PipelineError):
    kind = FailureKind.COMPILATION


class PackageInstallError(PipelineError):
    kind = FailureKind.PACKAGE_INSTALL


class ToolchainInstallError(PackageInstallError):
    pass


class LockVerificationError(PackageInstallError):
    """Requested package is missing from, or does not match, the package lock"""


class MissingArtifactError(PipelineError):
    kind = FailureKind.MISSING_ARTIFACT


class InstructionError(PipelineError):
    kind = FailureKind.INSTRUCTION


ERRORS_BY_KIND = {
    FailureKind.RETRIEVAL: RetrievalError,
    FailureKind.COMPILATION: CompilationError,
    FailureKind.PACKAGE_INSTALL: PackageInstallError,
    FailureKind.MISSING_ARTIFACT: MissingArtifactError,
    FailureKind.INSTRUCTION: InstructionError,
}


def error_for_kind(kind: FailureKind) -> type:
    return ERRORS_BY_KIND.get(kind, InstructionError)
