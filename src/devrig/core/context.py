from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict
from devrig.config.loader import load_config
from devrig.core.models import BuildSettings, FrameworkSettings, ServerSettings, WatchSettings

CONFIG_FILE_NAME = "devrig.yaml"


class DevrigContext(BaseModel):
    """
    Resolved project configuration shared by the build and runtime layers.
    """
    model_config = ConfigDict(extra="forbid")

    root_dir: Path = Field(default_factory=Path.cwd)

    # Framework Settings (Maps to 'devrig' section)
    settings: FrameworkSettings = Field(default_factory=FrameworkSettings)

    # Build Graph Inputs (Maps to 'build' section)
    build: BuildSettings = Field(default_factory=BuildSettings)

    # Dev Listener (Maps to 'server' section)
    server: ServerSettings = Field(default_factory=ServerSettings)

    # Source Watching (Maps to 'watch' section)
    watch: WatchSettings = Field(default_factory=WatchSettings)

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None, **data: Any):
        """
        Initialize the context, optionally with a configuration dictionary.
        """
        if config_dict:
            if 'settings' not in data:
                data['settings'] = FrameworkSettings(**config_dict.get('devrig', {}))
            if 'build' not in data:
                data['build'] = BuildSettings(**config_dict.get('build', {}))
            if 'server' not in data:
                data['server'] = ServerSettings(**config_dict.get('server', {}))
            if 'watch' not in data:
                data['watch'] = WatchSettings(**config_dict.get('watch', {}))

        super().__init__(**data)

    @classmethod
    def from_root(cls, root_dir: Path) -> "DevrigContext":
        """Load devrig.yaml from a project root and resolve the context."""
        root = root_dir.expanduser().resolve()
        return cls(config_dict=load_config(root / CONFIG_FILE_NAME), root_dir=root)

    @property
    def source_path(self) -> Path:
        return self.root_dir / self.build.source_dir

    @property
    def output_path(self) -> Path:
        return self.root_dir / self.build.output_dir

    @property
    def public_path(self) -> Path:
        return self.root_dir / self.build.public_dir
