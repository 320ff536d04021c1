from .enums import BackendType, FailureKind, InstructionType, PipelineState
from .errors import (
    CompilationError,
    ImageToolError,
    InstructionError,
    LockVerificationError,
    MissingArtifactError,
    PackageInstallError,
    PipelineDefinitionError,
    PipelineError,
    RetrievalError,
    ToolchainInstallError,
)
from .models import (
    ArtifactHandle,
    BuildSettings,
    Cmd,
    Compile,
    CopyFile,
    CreateUser,
    Entrypoint,
    Expose,
    ExtendPath,
    FetchSource,
    ImageMetadata,
    InstallPackages,
    InstallToolchain,
    Instruction,
    MakeDirectory,
    OutputImage,
    PinnedDependency,
    PipelineDefinition,
    Run,
    SetEnv,
    SetLocale,
    SetTimezone,
    Stage,
    SwitchUser,
)

__all__ = [
    'BackendType', 'FailureKind', 'InstructionType', 'PipelineState',
    'CompilationError', 'ImageToolError', 'InstructionError', 'LockVerificationError',
    'MissingArtifactError', 'PackageInstallError', 'PipelineDefinitionError',
    'PipelineError', 'RetrievalError', 'ToolchainInstallError',
    'ArtifactHandle', 'BuildSettings', 'Cmd', 'Compile', 'CopyFile', 'CreateUser',
    'Entrypoint', 'Expose', 'ExtendPath', 'FetchSource', 'ImageMetadata',
    'InstallPackages', 'InstallToolchain', 'Instruction', 'MakeDirectory',
    'OutputImage', 'PinnedDependency', 'PipelineDefinition', 'Run', 'SetEnv',
    'SetLocale', 'SetTimezone', 'Stage', 'SwitchUser',
]
