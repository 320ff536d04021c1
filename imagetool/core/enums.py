from enum import Enum


class InstructionType(str, Enum):
    FETCH_SOURCE = "fetch_source"
    COMPILE = "compile"
    INSTALL_PACKAGES = "install_packages"
    COPY = "copy"
    SET_TIMEZONE = "set_timezone"
    SET_LOCALE = "set_locale"
    INSTALL_TOOLCHAIN = "install_toolchain"
    CREATE_USER = "create_user"
    SWITCH_USER = "switch_user"
    SET_ENV = "set_env"
    EXTEND_PATH = "extend_path"
    MAKE_DIRECTORY = "make_directory"
    RUN = "run"
    EXPOSE = "expose"
    ENTRYPOINT = "entrypoint"
    CMD = "cmd"


class FailureKind(str, Enum):
    """What a failing instruction means for the pipeline"""
    RETRIEVAL = "retrieval"
    COMPILATION = "compilation"
    PACKAGE_INSTALL = "package_install"
    MISSING_ARTIFACT = "missing_artifact"
    INSTRUCTION = "instruction"


class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


class BackendType(str, Enum):
    DOCKER = "docker"
    MEMORY = "memory"
