from typing import Dict, List
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FrameworkSettings(BaseSettings):
    """
    Framework-level settings (the 'devrig' section in devrig.yaml).
    """
    model_config = SettingsConfigDict(env_prefix='DEVRIG_', extra='ignore')

    env: str = "development"
    app_name: str = "Devrig App"
    log_level: str = "INFO"


class BuildSettings(BaseModel):
    """
    Build graph inputs (the 'build' section in devrig.yaml).
    Paths are relative to the project root.
    """
    model_config = ConfigDict(extra='ignore')

    source_dir: str = "src"
    output_dir: str = "build"
    public_dir: str = "public"
    client_entries: Dict[str, List[str]] = Field(default_factory=lambda: {"client": ["client.js"]})
    server_entry: str = "server"
    public_path: str = "/assets/"
    inline_limit: int = Field(default=4096, ge=0)
    verbose: bool = False

    @field_validator("public_path")
    @classmethod
    def _normalize_public_path(cls, value: str) -> str:
        value = "/" + value.strip("/")
        return value if value == "/" else value + "/"

    @field_validator("client_entries")
    @classmethod
    def _require_entry_modules(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        if not value:
            raise ValueError("At least one client entry is required.")
        for name, modules in value.items():
            if not modules:
                raise ValueError(f"Client entry '{name}' declares no modules.")
        return value


class ServerSettings(BaseModel):
    """
    Dev HTTP listener settings (the 'server' section in devrig.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    host: str = "127.0.0.1"
    port: int = Field(default=3000, ge=0, le=65535)
    hot: bool = True
    open_browser: bool = True


class WatchSettings(BaseModel):
    """
    Source watching settings (the 'watch' section in devrig.yaml).
    """
    model_config = ConfigDict(extra='ignore')

    interval_ms: int = Field(default=500, ge=50)
    debounce_ms: int = Field(default=200, ge=0)
    exclude_patterns: List[str] = Field(
        default_factory=lambda: ["__pycache__/*", "*/__pycache__/*", "*.pyc", ".*"]
    )
