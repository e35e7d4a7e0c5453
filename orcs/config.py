"""
Configuration management for orcs stores.

Each store keeps its settings in orcs.toml at the store root.
It holds card defaults, index timing and the default alias policy for
reference analysis.
"""

import dataclasses
import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "orcs.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = ".orcs"


@dataclass
class CardDefaults:
    """Header values stamped on newly created cards."""
    classification: str = ""
    handling: list[str] = field(default_factory=lambda: [""])
    analyst: str = ""


@dataclass
class IndexSettings:
    poll_interval: float = 0.1
    initial_build_delay: float = 1.0
    auto_build: bool = True


@dataclass
class AnalysisSettings:
    """Default alias policy and result limits for reference analysis."""
    similarity_search: bool = False
    document_search: bool = True
    repository_search: bool = True
    max_untagged: int = 20
    context_radius: int = 100


@dataclass
class StoreConfig:
    """Settings for one store, as read from orcs.toml."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    cards: CardDefaults = field(default_factory=CardDefaults)
    index: IndexSettings = field(default_factory=IndexSettings)
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)

    @property
    def config_path(self) -> Path:
        """Location of orcs.toml."""
        return self.path / CONFIG_FILENAME


def get_default_store_path() -> Path:
    """
    Resolve the store directory.

    Priority:
    1. ORCS_STORE_PATH environment variable
    2. ~/.orcs
    """
    env_path = os.environ.get("ORCS_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / DEFAULT_STORE_DIR


_SECTIONS = {
    "cards": CardDefaults,
    "index": IndexSettings,
    "analysis": AnalysisSettings,
}


def _table(data: dict, name: str) -> dict[str, Any]:
    value = data.get(name, {})
    return value if isinstance(value, dict) else {}


def _read_section(cls, table: dict[str, Any]):
    """Build a settings dataclass from a TOML table, falling back to defaults."""
    defaults = cls()
    values = {}
    for f in dataclasses.fields(cls):
        default = getattr(defaults, f.name)
        raw = table.get(f.name, default)
        if isinstance(default, list):
            values[f.name] = [str(v) for v in ([raw] if isinstance(raw, str) else raw)]
        elif isinstance(default, bool):
            values[f.name] = bool(raw)
        else:
            values[f.name] = type(default)(raw)
    return cls(**values)


def load_config(store_path: Path) -> StoreConfig:
    """
    Read orcs.toml from a store directory.

    Raises:
        FileNotFoundError: If the store has no orcs.toml
        ValueError: If the file was written by a newer orcs
    """
    toml_path = Path(store_path) / CONFIG_FILENAME
    if not toml_path.is_file():
        raise FileNotFoundError(f"No {CONFIG_FILENAME} in {store_path}")

    data = tomllib.loads(toml_path.read_text(encoding="utf-8"))
    store = _table(data, "store")
    version = int(store.get("version", 1))
    if version > CONFIG_VERSION:
        raise ValueError(
            f"{toml_path} has config version {version}, newer than supported ({CONFIG_VERSION})"
        )

    return StoreConfig(
        path=Path(store_path),
        version=version,
        created=str(store.get("created", "")),
        **{name: _read_section(cls, _table(data, name)) for name, cls in _SECTIONS.items()},
    )


def save_config(config: StoreConfig) -> None:
    """Write orcs.toml, creating the store directory if needed."""
    config.path.mkdir(parents=True, exist_ok=True)
    data: dict[str, Any] = {"store": {"version": config.version, "created": config.created}}
    for name in _SECTIONS:
        data[name] = dataclasses.asdict(getattr(config, name))
    config.config_path.write_text(tomli_w.dumps(data), encoding="utf-8")


def load_or_create_config(store_path: Optional[Path] = None) -> StoreConfig:
    """
    Open the store's config, writing a default orcs.toml on first use.

    Falls back to get_default_store_path() when no path is given.
    """
    store_path = Path(store_path) if store_path is not None else get_default_store_path()
    if (store_path / CONFIG_FILENAME).is_file():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
