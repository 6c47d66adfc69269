"""
Launcher configuration.

Two JSON files live in the configuration directory, as they always have:

``launcher_config.json``
    where the game files go (``basepath``, ``path``) and the default ``version``.
    Every string may use ``:thisdir:`` for the configuration directory itself.
``config.json``
    the player profile (``auth_player_name``, ``memory_mb``, ...) and tuning knobs.
    Optional; defaults apply when it is missing or unreadable.
"""
import json
import logging
import pathlib
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigError
from .models import Profile
from .replacer import patch_config

log = logging.getLogger(__name__)

LAUNCHER_CONFIG_FILE = 'launcher_config.json'
USER_CONFIG_FILE = 'config.json'
DEFAULT_VERSION = 'release'


class StoreLayout:
    """Directory layout of one storage root; every path of a run derives from here."""

    def __init__(self, root: pathlib.Path):
        self.root = pathlib.Path(root)
        self.versions_dir = self.root / 'versions'
        self.libraries_dir = self.root / 'libraries'
        self.assets_dir = self.root / 'assets'
        self.asset_indexes_dir = self.assets_dir / 'indexes'
        self.asset_objects_dir = self.assets_dir / 'objects'
        self.runtime_dir = self.root / 'java-runtime'

    def resolve(self, relative: str) -> pathlib.Path:
        return self.root.joinpath(*relative.split('/'))

    def version_dir(self, version_id: str) -> pathlib.Path:
        return self.versions_dir / version_id

    def natives_dir(self, version_id: str) -> pathlib.Path:
        return self.version_dir(version_id) / f"{version_id}-natives"

    def asset_object(self, sha1: str) -> pathlib.Path:
        return self.asset_objects_dir / sha1[:2] / sha1

    def __repr__(self) -> str:
        return f"<StoreLayout {self.root}>"


class LauncherConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    base_dir: pathlib.Path
    version: str = DEFAULT_VERSION

    username: str = Field('Player', alias='auth_player_name')
    uuid: Optional[str] = Field(None, alias='auth_uuid')
    access_token: str = Field('00000000000000000000000000000000', alias='auth_access_token')
    xuid: str = Field('0', alias='auth_xuid')
    user_type: str = 'msa'
    memory_mb: int = Field(2048, gt=0)

    java_path: Optional[pathlib.Path] = None
    java_search_dirs: List[pathlib.Path] = Field(default_factory=list)

    max_parallel_downloads: int = Field(16, ge=1)
    download_retries: int = Field(3, ge=0)
    retry_backoff: float = Field(0.5, ge=0)
    memory_safety_margin_mb: int = Field(1024, ge=0)
    min_memory_mb: int = Field(512, gt=0)
    allow_degraded_assets: bool = True

    demo: bool = False
    resolution_width: Optional[int] = None
    resolution_height: Optional[int] = None

    @property
    def layout(self) -> StoreLayout:
        return StoreLayout(self.base_dir)

    def features(self) -> Dict[str, bool]:
        return {
            'is_demo_user': self.demo,
            'has_custom_resolution': self.resolution_width is not None and self.resolution_height is not None,
        }

    def profile(self) -> Profile:
        return Profile(username=self.username, version=self.version, memory_mb=self.memory_mb)


def _read_json(file_path: pathlib.Path, required: bool) -> Dict[str, Any]:
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        if required:
            raise ConfigError(f"{file_path.name} not found in {file_path.parent}")
        return {}
    except json.JSONDecodeError as e:
        if required:
            raise ConfigError(f"Error parsing {file_path.name}: {e}") from e
        log.warning(f"Could not parse {file_path.name}: {e}. Using defaults.")
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{file_path.name} must contain a JSON object")
    return data


def load_config(config_dir: pathlib.Path, require_launcher_config: bool = False,
                overrides: Optional[Dict[str, Any]] = None) -> LauncherConfig:
    """Loads and validates both configuration files of ``config_dir``.

    ``overrides`` (e.g. from command line flags) take precedence over file values;
    ``None`` values in it are ignored.
    """
    config_dir = pathlib.Path(config_dir).resolve()
    patch = {':thisdir:': str(config_dir)}

    launcher = patch_config(_read_json(config_dir / LAUNCHER_CONFIG_FILE, require_launcher_config), patch)
    user = patch_config(_read_json(config_dir / USER_CONFIG_FILE, False), patch)

    base_path = pathlib.Path(launcher.get('basepath') or config_dir / '.mc_launcher_data')
    values: Dict[str, Any] = dict(user)
    values['base_dir'] = base_path / launcher.get('path', '.minecraft')
    if launcher.get('version'):
        values.setdefault('version', launcher['version'])
    for key, value in (overrides or {}).items():
        if value is not None:
            field = LauncherConfig.model_fields.get(key)
            values[field.alias or key if field is not None else key] = value

    # Drop empty strings so the defaults apply, as an empty name is never meant literally.
    values = {k: v for k, v in values.items() if v != ''}
    try:
        config = LauncherConfig.model_validate(values)
    except ValidationError as e:
        raise ConfigError(f"Invalid launcher configuration: {e}") from e
    log.debug(f"Launcher config: {config.model_dump_json(indent=2, exclude={'access_token'})}")
    return config
