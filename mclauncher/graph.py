import logging
from typing import Dict, List, Optional, Tuple

from .errors import NoArtifactForPlatform
from .manifest import parse_coordinate
from .models import Artifact, ArtifactKind, Download, LibraryEntry, NativeArchive, Platform, ResolvedInstallation, \
    VersionManifest
from .rules import evaluate_with_specificity

log = logging.getLogger(__name__)

DEFAULT_NATIVE_EXCLUDE = ('META-INF/',)


def arch_bits(arch: str) -> str:
    return '64' if arch in ('x64', 'arm64') else '32'


def library_key(coordinate: str) -> str:
    """Identity of a library regardless of its version: ``group:artifact[:classifier]``."""
    group, artifact, _, classifier, _ = parse_coordinate(coordinate)
    return f"{group}:{artifact}:{classifier}" if classifier else f"{group}:{artifact}"


class DependencyGraphBuilder:
    """Turns an effective manifest into the concrete artifact set for one platform."""

    def __init__(self, target: Platform):
        self.platform = target

    def native_for(self, entry: LibraryEntry) -> Optional[Download]:
        os_name = self.platform.os_family
        for key in (f"{os_name}/{self.platform.arch}", f"{os_name}/{arch_bits(self.platform.arch)}", os_name):
            if key in entry.natives:
                return entry.natives[key]
        return None

    def active_libraries(self, manifest: VersionManifest) -> List[LibraryEntry]:
        """Libraries whose rules allow the platform, deduplicated by ``library_key``.

        When a library appears twice, the occurrence decided by the rule with the
        most conditions wins, later occurrences winning ties; it keeps the position
        of the first occurrence.
        """
        selected: Dict[str, Tuple[int, int, LibraryEntry]] = {}
        for order, entry in enumerate(manifest.libraries):
            allowed, specificity = evaluate_with_specificity(entry.rules, self.platform)
            if not allowed:
                log.debug(f"Skipping library due to rules: {entry.coordinate}")
                continue
            key = library_key(entry.coordinate)
            previous = selected.get(key)
            if previous is None:
                selected[key] = (order, specificity, entry)
            elif specificity >= previous[1]:
                log.debug(f"Library {entry.coordinate} replaces {previous[2].coordinate}")
                selected[key] = (previous[0], specificity, entry)
        return [entry for _, _, entry in sorted(selected.values(), key=lambda item: item[0])]

    def build(self, manifest: VersionManifest) -> ResolvedInstallation:
        if manifest.client is None:
            raise NoArtifactForPlatform(f"client jar of {manifest.id}", self.platform.describe())

        client_jar = Artifact(
            identity=f"client:{manifest.id}",
            kind=ArtifactKind.CLIENT,
            url=manifest.client.url,
            path=manifest.client.path,
            sha1=manifest.client.sha1,
            size=manifest.client.size,
        )

        classpath: List[Artifact] = []
        natives: List[NativeArchive] = []
        for entry in self.active_libraries(manifest):
            native = self.native_for(entry)
            if native is not None:
                natives.append(NativeArchive(
                    artifact=_library_artifact(f"{entry.coordinate}:natives", native, ArtifactKind.NATIVE),
                    exclude=entry.extract_exclude or DEFAULT_NATIVE_EXCLUDE,
                ))
            if entry.artifact is not None:
                classpath.append(_library_artifact(entry.coordinate, entry.artifact, ArtifactKind.LIBRARY))
            if native is None and entry.artifact is None:
                log.debug(f"Library {entry.coordinate} has nothing to offer on {self.platform.describe()}")

        asset_index = None
        if manifest.asset_index is not None:
            asset_index = Artifact(
                identity=f"asset-index:{manifest.asset_index.id}",
                kind=ArtifactKind.ASSET_INDEX,
                url=manifest.asset_index.url,
                path=f"assets/indexes/{manifest.asset_index.id}.json",
                sha1=manifest.asset_index.sha1,
                size=manifest.asset_index.size,
            )

        log_config = None
        if manifest.log_config is not None:
            log_config = Artifact(
                identity=f"log-config:{manifest.log_config.id}",
                kind=ArtifactKind.LOG_CONFIG,
                url=manifest.log_config.url,
                path=f"assets/log_configs/{manifest.log_config.id}",
                sha1=manifest.log_config.sha1,
                size=manifest.log_config.size,
                optional=True,
            )

        log.info(f"Resolved {len(classpath)} classpath libraries and {len(natives)} native archives "
                 f"for {manifest.id} on {self.platform.describe()}")
        return ResolvedInstallation(
            version_id=manifest.id,
            manifest=manifest,
            platform=self.platform,
            classpath=tuple(classpath),
            natives=tuple(natives),
            client_jar=client_jar,
            asset_index=asset_index,
            log_config=log_config,
        )


def _library_artifact(identity: str, download: Download, kind: ArtifactKind) -> Artifact:
    return Artifact(
        identity=identity,
        kind=kind,
        url=download.url,
        path=f"libraries/{download.path}",
        sha1=download.sha1,
        size=download.size,
    )
