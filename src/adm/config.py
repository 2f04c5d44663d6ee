from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - Python <3.11 not supported per pyproject
    tomllib = None  # type: ignore

from tomlkit import dumps as toml_dumps


DEFAULT_CONFIG_PATH = Path("~/.config/adm-convert/config.toml").expanduser()
ENV_PREFIX = "ADM_"


class AdmSettings(BaseSettings):
    """Global settings for adm-convert.

    Priority (lowest -> highest):
    - Class defaults below
    - TOML file at `config_path` (default: ~/.config/adm-convert/config.toml)
    - Environment variables with prefix ADM_
    - CLI overrides passed to `load(overrides=...)`
    """

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="Path for structured JSON log file")

    # External tools (resolved through PATH unless absolute)
    encoder_bin: str = Field(default="afconvert", description="Encoder executable")
    info_bin: str = Field(default="afinfo", description="Info probe executable (sample rate)")
    analyzer_bin: str = Field(default="afclip", description="Clip analyzer executable")

    # Conversion preferences
    include_soundcheck: bool = Field(
        default=True, description="Two-pass encode with SoundCheck generate/read; False = single direct pass"
    )
    use_output_folder: bool = Field(
        default=False, description="Write outputs to an 'M4A' subfolder next to each source"
    )

    # Concurrency policy
    interactive_workers: int = Field(default=4, ge=1, description="Concurrent items for interactive runs")
    batch_workers: int = Field(default=12, ge=1, description="Concurrent items for unattended batch runs")

    # Intermediate files; None = <system temp>/adm-convert
    temp_dir: Optional[str] = Field(default=None, description="Directory for intermediate CAF/M4A files")

    # Config source/path (not persisted as part of effective config when writing)
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @staticmethod
    def default_config_path() -> Path:
        return DEFAULT_CONFIG_PATH

    def resolved_temp_dir(self) -> Path:
        if self.temp_dir:
            return Path(self.temp_dir).expanduser()
        return Path(tempfile.gettempdir()) / "adm-convert"

    @classmethod
    def _toml_file_source(cls, config_path: Path) -> Dict[str, Any]:
        """Read settings from a TOML file if it exists; return dict values.

        Unknown keys are ignored by pydantic via extra="ignore".
        """
        if not config_path or not config_path.exists():
            return {}
        if tomllib is None:
            return {}
        with config_path.open("rb") as f:
            data = tomllib.load(f)
        if not isinstance(data, dict):
            return {}
        return data  # type: ignore[return-value]

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "AdmSettings":
        """Load settings from defaults + TOML + env + CLI overrides.

        - config_path: path to TOML config; defaults to ~/.config/adm-convert/config.toml
        - overrides: dict of CLI values (None values are ignored)
        """
        cp = config_path or DEFAULT_CONFIG_PATH
        file_values = cls._toml_file_source(cp)
        # Init kwargs outrank env in pydantic-settings, so layer explicitly:
        # only fields actually set by the environment override the file.
        env_only = cls()
        env_values = env_only.model_dump(include=env_only.model_fields_set)
        if overrides:
            non_none = {k: v for k, v in overrides.items() if v is not None}
        else:
            non_none = {}
        merged = {**file_values, **env_values, **non_none}
        settings = cls(**merged)
        settings.config_path = cp
        return settings

    def to_toml(self) -> str:
        """Serialize effective settings (excluding ephemeral fields) to TOML string."""
        # TOML has no null; unset optionals are simply omitted
        data = {k: v for k, v in self.model_dump(exclude={"config_path"}).items() if v is not None}
        return toml_dumps(data)

    def write(self, path: Optional[Path] = None) -> Path:
        """Write effective config to TOML at `path` (or default path). Creates parent dirs.

        Returns the path written.
        """
        target = path or self.config_path or DEFAULT_CONFIG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml(), encoding="utf-8")
        return target


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Extract known settings keys from argparse Namespace into an overrides dict.

    Unknown keys are ignored; None values are preserved for filtering by `load()`.
    """
    keys = {
        "log_level",
        "log_json",
        "encoder_bin",
        "info_bin",
        "analyzer_bin",
        "include_soundcheck",
        "use_output_folder",
        "interactive_workers",
        "batch_workers",
        "temp_dir",
    }
    result: Dict[str, Any] = {}
    for k in keys:
        if hasattr(args, k):
            result[k] = getattr(args, k)
    return result
