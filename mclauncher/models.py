"""
Typed value objects shared by every stage of the launch pipeline.

The manifest document is parsed once into these models (see ``manifest.py``);
after that no stage looks at raw JSON again.
"""
import enum
import pathlib
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# --- Rules ---

class OsCondition(_Frozen):
    kind: Literal["os"] = "os"
    name: str


class ArchCondition(_Frozen):
    kind: Literal["arch"] = "arch"
    arch: str


class OsVersionCondition(_Frozen):
    kind: Literal["os_version"] = "os_version"
    pattern: str


class FeatureCondition(_Frozen):
    kind: Literal["feature"] = "feature"
    name: str
    expected: bool = True


Condition = Annotated[
    Union[OsCondition, ArchCondition, OsVersionCondition, FeatureCondition],
    Field(discriminator="kind"),
]


class Rule(_Frozen):
    action: Literal["allow", "disallow"] = "allow"
    conditions: Tuple[Condition, ...] = ()


class Platform(_Frozen):
    """The machine a launch is prepared for."""
    os_family: str
    arch: str
    os_version: str = ""
    features: Dict[str, bool] = Field(default_factory=dict)

    def describe(self) -> str:
        return f"{self.os_family}/{self.arch}"


# --- Manifest ---

class Download(_Frozen):
    url: str
    path: str
    sha1: Optional[str] = None
    size: Optional[int] = None


class LibraryEntry(_Frozen):
    coordinate: str
    artifact: Optional[Download] = None
    natives: Dict[str, Download] = Field(default_factory=dict)
    rules: Tuple[Rule, ...] = ()
    extract_exclude: Tuple[str, ...] = ()


class ArgumentTemplate(_Frozen):
    values: Tuple[str, ...]
    rules: Tuple[Rule, ...] = ()


class AssetIndexRef(_Frozen):
    id: str
    url: str
    sha1: Optional[str] = None
    size: Optional[int] = None
    total_size: Optional[int] = None


class LogConfigRef(_Frozen):
    id: str
    url: str
    argument: str
    sha1: Optional[str] = None
    size: Optional[int] = None


class VersionManifest(_Frozen):
    id: str
    parent_id: Optional[str] = None
    type: Optional[str] = None
    main_class: Optional[str] = None
    min_runtime: Optional[int] = None
    jvm_arguments: Tuple[ArgumentTemplate, ...] = ()
    game_arguments: Tuple[ArgumentTemplate, ...] = ()
    asset_index: Optional[AssetIndexRef] = None
    client: Optional[Download] = None
    log_config: Optional[LogConfigRef] = None
    libraries: Tuple[LibraryEntry, ...] = ()
    # Set for pre-1.13 documents which only carry "minecraftArguments".
    legacy_arguments: bool = False


class CatalogEntry(_Frozen):
    id: str
    type: str
    url: str
    sha1: Optional[str] = None
    release_time: Optional[str] = None


# --- Artifacts ---

class ArtifactKind(str, enum.Enum):
    CLIENT = "client"
    LIBRARY = "library"
    NATIVE = "native"
    ASSET_INDEX = "asset_index"
    ASSET = "asset"
    LOG_CONFIG = "log_config"


class Artifact(_Frozen):
    """A downloadable file, ``path`` being relative to the storage root."""
    identity: str
    kind: ArtifactKind
    url: str
    path: str
    sha1: Optional[str] = None
    size: Optional[int] = None
    optional: bool = False


class AssetObject(_Frozen):
    name: str
    sha1: str
    size: Optional[int] = None


class AssetIndex(_Frozen):
    id: str
    objects: Tuple[AssetObject, ...] = ()
    virtual: bool = False
    map_to_resources: bool = False


class NativeArchive(_Frozen):
    artifact: Artifact
    exclude: Tuple[str, ...] = ("META-INF/",)


class ResolvedInstallation(_Frozen):
    version_id: str
    manifest: VersionManifest
    platform: Platform
    classpath: Tuple[Artifact, ...] = ()
    natives: Tuple[NativeArchive, ...] = ()
    client_jar: Artifact
    asset_index: Optional[Artifact] = None
    log_config: Optional[Artifact] = None

    def artifacts(self) -> List[Artifact]:
        """Every artifact the installation needs on disk, client jar first."""
        result = [self.client_jar, *self.classpath, *(n.artifact for n in self.natives)]
        if self.asset_index is not None:
            result.append(self.asset_index)
        if self.log_config is not None:
            result.append(self.log_config)
        return result


# --- Download bookkeeping ---

class DownloadState(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class DownloadTask(BaseModel):
    artifact: Artifact
    destination: pathlib.Path
    retries: int = 0
    state: DownloadState = DownloadState.PENDING
    error: Optional[str] = None

    @property
    def identity(self) -> str:
        return self.artifact.identity

    @property
    def partial(self) -> pathlib.Path:
        return self.destination.with_name(self.destination.name + ".part")


class DownloadOutcome(_Frozen):
    artifact: Artifact
    ok: bool
    fetched: bool = False
    attempts: int = 0
    reason: Optional[str] = None


class ProgressEvent(_Frozen):
    identity: str
    done: int
    total: Optional[int] = None


# --- Launch ---

class Profile(_Frozen):
    username: str
    version: str
    memory_mb: int


class JavaRuntime(_Frozen):
    path: pathlib.Path
    major_version: int
    version: str = ""


class LaunchPlan(_Frozen):
    executable: pathlib.Path
    min_memory_mb: int
    max_memory_mb: int
    classpath: str
    natives_dir: pathlib.Path
    main_class: str
    arguments: Tuple[str, ...]
    working_dir: pathlib.Path

    @property
    def command(self) -> List[str]:
        return [str(self.executable), *self.arguments]
