import yaml
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field


@dataclass
class BuildSystemConfig:
    """Build system configuration"""
    pipelines_dir: str = "./examples/pipelines"
    state_dir: str = "./data/builds"
    context_dir: str = "."
    package_lock: Optional[str] = None
    backend: str = "docker"  # "docker" | "memory"
    include_catalog: bool = True
    build_lock_timeout: int = 30
    max_concurrent_pipelines: int = 2


@dataclass
class DockerConfig:
    """Docker engine configuration"""
    base_url: Optional[str] = None  # None uses DOCKER_HOST / the local socket
    timeout: int = 600
    pull: bool = False


@dataclass
class MemoryConfig:
    """In-memory backend configuration"""
    # "<url>@<tag>" -> local checkout served for that pinned dependency
    sources: Dict[str, str] = field(default_factory=dict)
    strict_base_images: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class GlobalConfig:
    """Global configuration for the image build tool"""
    build_system: BuildSystemConfig = field(default_factory=BuildSystemConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GlobalConfig':
        """Create GlobalConfig from dictionary"""
        return cls(
            build_system=BuildSystemConfig(**data.get('build_system', {})),
            docker=DockerConfig(**data.get('docker', {})),
            memory=MemoryConfig(**data.get('memory', {})),
            logging=LoggingConfig(**data.get('logging', {})),
        )

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'GlobalConfig':
        """Load GlobalConfig from YAML file"""
        path = Path(yaml_path)
        if not path.exists():
            return cls.default()

        with open(path, 'r') as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data or {})

    @classmethod
    def default(cls) -> 'GlobalConfig':
        """Return default configuration"""
        return cls()

    def backend_config(self) -> Dict[str, Any]:
        """Settings handed to the build backend factory"""
        return {
            'base_url': self.docker.base_url,
            'timeout': self.docker.timeout,
            'pull': self.docker.pull,
            'sources': dict(self.memory.sources),
            'strict_base_images': self.memory.strict_base_images,
        }


def load_global_config(config_path: Optional[str] = None) -> GlobalConfig:
    """
    Load global configuration from YAML file.
    If no path provided, looks for global_config.yaml in standard locations.
    """
    if config_path:
        return GlobalConfig.from_yaml(config_path)

    search_paths = [
        Path("./global_config.yaml"),
        Path("./imagetool/config/global_config.yaml"),
        Path("./config/global_config.yaml"),
        Path("/etc/imagetool/global_config.yaml"),
    ]

    for path in search_paths:
        if path.exists():
            return GlobalConfig.from_yaml(str(path))

    return GlobalConfig.default()
