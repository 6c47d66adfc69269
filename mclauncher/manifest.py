"""
Version manifest loading, parsing and inheritance.

A version document may name a parent through ``inheritsFrom``; the resolver loads
the whole chain and folds it into one effective ``VersionManifest`` with
``merge_manifests``. Field policy of the merge:

* scalar fields (type, main class, minimum runtime, asset index, client download,
  log config): the child's value wins when it has one, otherwise the parent's;
* argument templates and libraries: the parent's entries followed by the child's;
* a legacy ``minecraftArguments`` string is itself a scalar in the document, so a
  legacy child replaces the parent's game arguments instead of extending them.
"""
import hashlib
import json
import logging
import pathlib
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from .errors import ManifestCorrupt, ManifestNotFound
from .http import FetchError, Fetcher, fetch_bytes, fetch_json
from .models import ArgumentTemplate, AssetIndexRef, CatalogEntry, Download, LibraryEntry, LogConfigRef, VersionManifest
from .rules import parse_rules

log = logging.getLogger(__name__)

VERSION_MANIFEST_URL = 'https://piston-meta.mojang.com/mc/game/version_manifest_v2.json'
LIBRARIES_URL = 'https://libraries.minecraft.net/'
MAX_INHERITANCE_DEPTH = 10


# --- Maven coordinates ---

def parse_coordinate(name: str) -> Tuple[str, str, str, Optional[str], str]:
    """Splits ``group:artifact:version[:classifier][@ext]``."""
    ext = 'jar'
    if '@' in name:
        name, ext = name.rsplit('@', 1)
    parts = name.split(':')
    if len(parts) < 3:
        raise ValueError(f"invalid library coordinate: {name}")
    group, artifact, version = parts[0], parts[1], parts[2]
    classifier = parts[3] if len(parts) > 3 else None
    return group, artifact, version, classifier, ext


def maven_path(name: str) -> str:
    group, artifact, version, classifier, ext = parse_coordinate(name)
    suffix = f"-{classifier}" if classifier else ''
    return f"{group.replace('.', '/')}/{artifact}/{version}/{artifact}-{version}{suffix}.{ext}"


def _classified_path(name: str, classifier: str) -> str:
    group, artifact, version, _, ext = parse_coordinate(name)
    return maven_path(f"{group}:{artifact}:{version}:{classifier}@{ext}")


def _native_key(classifier: str) -> Optional[str]:
    """Maps a split-natives classifier such as ``natives-macos-arm64`` to ``osx/arm64``.

    A classifier without an architecture suffix designates the x64 build.
    """
    if not classifier.startswith('natives-'):
        return None
    parts = classifier[len('natives-'):].split('-', 1)
    os_name = {'macos': 'osx', 'osx': 'osx', 'linux': 'linux', 'windows': 'windows'}.get(parts[0])
    if os_name is None:
        return None
    arch = parts[1] if len(parts) > 1 else 'x64'
    return f"{os_name}/{arch}"


# --- Document parsing ---

def _download(raw: Any, path: str) -> Download:
    if not isinstance(raw, dict) or not isinstance(raw.get('url'), str):
        raise ValueError(f"download for {path} must be an object with an url")
    return Download(url=raw['url'], path=raw.get('path') or path, sha1=raw.get('sha1'), size=raw.get('size'))


def parse_library(raw: Dict[str, Any]) -> LibraryEntry:
    name = raw.get('name')
    if not isinstance(name, str):
        raise ValueError("library without a name")
    downloads = raw.get('downloads') or {}
    artifact = None
    natives: Dict[str, Download] = {}

    if 'artifact' in downloads:
        artifact = _download(downloads['artifact'], maven_path(name))
    elif not downloads:
        # No downloads block: the coordinate names the file on a Maven repository.
        path = maven_path(name)
        base = raw.get('url') or LIBRARIES_URL
        if not base.endswith('/'):
            base += '/'
        artifact = Download(url=base + path, path=path, sha1=raw.get('sha1'), size=raw.get('size'))

    classifiers = downloads.get('classifiers') or {}
    for os_name, classifier in (raw.get('natives') or {}).items():
        if '${arch}' in classifier:
            for bits in ('32', '64'):
                key = classifier.replace('${arch}', bits)
                if key in classifiers:
                    natives[f"{os_name}/{bits}"] = _download(classifiers[key], _classified_path(name, key))
        elif classifier in classifiers:
            natives[os_name] = _download(classifiers[classifier], _classified_path(name, classifier))

    classifier = parse_coordinate(name)[3]
    native_key = _native_key(classifier) if classifier else None
    if native_key is not None and artifact is not None:
        natives[native_key] = artifact
        artifact = None

    exclude = tuple((raw.get('extract') or {}).get('exclude') or ())
    return LibraryEntry(
        coordinate=name,
        artifact=artifact,
        natives=natives,
        rules=parse_rules(raw.get('rules')),
        extract_exclude=exclude,
    )


def parse_arguments(raw: Any) -> Tuple[ArgumentTemplate, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ValueError("arguments must be a list")
    templates = []
    for entry in raw:
        if isinstance(entry, str):
            templates.append(ArgumentTemplate(values=(entry,)))
        elif isinstance(entry, dict):
            value = entry.get('value')
            values = (value,) if isinstance(value, str) else tuple(value or ())
            if not all(isinstance(v, str) for v in values):
                raise ValueError(f"unsupported argument value: {value!r}")
            templates.append(ArgumentTemplate(values=values, rules=parse_rules(entry.get('rules'))))
        else:
            raise ValueError(f"unsupported argument format: {entry!r}")
    return tuple(templates)


def parse_manifest(document: Dict[str, Any]) -> VersionManifest:
    """Parses one raw version document, without looking at its parent."""
    if not isinstance(document, dict):
        raise ManifestCorrupt('?', "document is not a JSON object")
    version_id = document.get('id')
    if not isinstance(version_id, str) or not version_id:
        raise ManifestCorrupt('?', "missing 'id'")

    try:
        arguments = document.get('arguments') or {}
        game_arguments = parse_arguments(arguments.get('game'))
        legacy = False
        if not game_arguments and isinstance(document.get('minecraftArguments'), str):
            game_arguments = tuple(ArgumentTemplate(values=(v,)) for v in document['minecraftArguments'].split())
            legacy = True

        asset_index = None
        if document.get('assetIndex'):
            raw_index = document['assetIndex']
            asset_index = AssetIndexRef(
                id=raw_index.get('id'), url=raw_index.get('url'), sha1=raw_index.get('sha1'),
                size=raw_index.get('size'), total_size=raw_index.get('totalSize'))

        client = None
        raw_client = (document.get('downloads') or {}).get('client')
        if raw_client:
            client = _download(raw_client, f"versions/{version_id}/{version_id}.jar")

        log_config = None
        raw_logging = (document.get('logging') or {}).get('client')
        if raw_logging:
            raw_file = raw_logging.get('file') or {}
            log_config = LogConfigRef(
                id=raw_file.get('id'), url=raw_file.get('url'), argument=raw_logging.get('argument'),
                sha1=raw_file.get('sha1'), size=raw_file.get('size'))

        java_version = document.get('javaVersion') or {}
        return VersionManifest(
            id=version_id,
            parent_id=document.get('inheritsFrom'),
            type=document.get('type'),
            main_class=document.get('mainClass'),
            min_runtime=java_version.get('majorVersion'),
            jvm_arguments=parse_arguments(arguments.get('jvm')),
            game_arguments=game_arguments,
            asset_index=asset_index,
            client=client,
            log_config=log_config,
            libraries=tuple(parse_library(lib) for lib in document.get('libraries') or ()),
            legacy_arguments=legacy,
        )
    except (ValueError, TypeError, AttributeError, ValidationError) as e:
        raise ManifestCorrupt(version_id, str(e)) from e


def merge_manifests(parent: VersionManifest, child: VersionManifest) -> VersionManifest:
    """Merges two version manifests (child inheriting from parent)."""
    log.info(f"Merging manifests: {child.id} inheriting from {parent.id}")
    if child.legacy_arguments:
        game_arguments = child.game_arguments
    else:
        game_arguments = parent.game_arguments + child.game_arguments
    return VersionManifest(
        id=child.id,
        parent_id=child.parent_id,
        type=child.type if child.type is not None else parent.type,
        main_class=child.main_class if child.main_class is not None else parent.main_class,
        min_runtime=child.min_runtime if child.min_runtime is not None else parent.min_runtime,
        jvm_arguments=parent.jvm_arguments + child.jvm_arguments,
        game_arguments=game_arguments,
        asset_index=child.asset_index if child.asset_index is not None else parent.asset_index,
        client=child.client if child.client is not None else parent.client,
        log_config=child.log_config if child.log_config is not None else parent.log_config,
        libraries=parent.libraries + child.libraries,
        legacy_arguments=child.legacy_arguments or (parent.legacy_arguments and not child.game_arguments),
    )


# --- Catalogs ---

class ManifestCatalog:
    """Source of raw version documents."""

    async def fetch(self, version_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def resolve_alias(self, version_id: str) -> str:
        return version_id


class LocalCatalog(ManifestCatalog):
    """Reads ``<dir>/<id>/<id>.json`` (the versions directory layout) or ``<dir>/<id>.json``."""

    def __init__(self, directory: pathlib.Path):
        self.directory = pathlib.Path(directory)

    async def fetch(self, version_id: str) -> Dict[str, Any]:
        for file_path in (self.directory / version_id / f"{version_id}.json", self.directory / f"{version_id}.json"):
            if await aiofiles.os.path.isfile(file_path):
                break
        else:
            raise ManifestNotFound(version_id)

        log.info(f"Loading manifest: {file_path}")
        async with aiofiles.open(file_path, 'r', encoding='utf-8') as f:
            content = await f.read()
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise ManifestCorrupt(version_id, f"invalid JSON in {file_path.name}: {e}") from e


class RemoteCatalog(ManifestCatalog):
    """The official version list; fetched documents are written to ``store_dir``."""

    def __init__(self, fetcher: Fetcher, store_dir: Optional[pathlib.Path] = None,
                 url: str = VERSION_MANIFEST_URL):
        self.fetcher = fetcher
        self.store_dir = store_dir
        self.url = url
        self._data: Optional[Dict[str, Any]] = None

    async def _ensure_data(self) -> Dict[str, Any]:
        if self._data is None:
            log.info(f"Fetching version list from {self.url}")
            try:
                data = await fetch_json(self.fetcher, self.url)
            except FetchError as e:
                raise ManifestNotFound(f"<version list: {e}>") from e
            if not isinstance(data, dict) or not isinstance(data.get('versions'), list):
                raise ManifestCorrupt('<version list>', "missing 'versions'")
            self._data = data
        return self._data

    async def list_versions(self, kind: Optional[str] = 'release') -> List[CatalogEntry]:
        data = await self._ensure_data()
        entries = []
        for raw in data['versions']:
            if kind is not None and raw.get('type') != kind:
                continue
            entries.append(CatalogEntry(
                id=raw['id'], type=raw.get('type', ''), url=raw['url'],
                sha1=raw.get('sha1'), release_time=raw.get('releaseTime')))
        return entries

    async def resolve_alias(self, version_id: str) -> str:
        if version_id in ('release', 'snapshot'):
            data = await self._ensure_data()
            latest = (data.get('latest') or {}).get(version_id)
            if latest:
                return latest
        return version_id

    async def fetch(self, version_id: str) -> Dict[str, Any]:
        entries = await self.list_versions(kind=None)
        entry = next((e for e in entries if e.id == version_id), None)
        if entry is None:
            raise ManifestNotFound(version_id)

        try:
            raw = await fetch_bytes(self.fetcher, entry.url)
        except FetchError as e:
            raise ManifestNotFound(version_id) from e
        if entry.sha1 and hashlib.sha1(raw).hexdigest() != entry.sha1.lower():
            raise ManifestCorrupt(version_id, "document hash does not match the version list")
        try:
            document = json.loads(raw)
        except ValueError as e:
            raise ManifestCorrupt(version_id, f"invalid JSON: {e}") from e

        if self.store_dir is not None:
            dest = self.store_dir / version_id / f"{version_id}.json"
            part = dest.with_name(dest.name + '.part')
            await aiofiles.os.makedirs(dest.parent, exist_ok=True)
            async with aiofiles.open(part, 'wb') as f:
                await f.write(raw)
            await aiofiles.os.replace(part, dest)
            log.debug(f"Stored manifest {version_id} at {dest}")
        return document


class ChainCatalog(ManifestCatalog):
    """Tries each source in order."""

    def __init__(self, *sources: ManifestCatalog):
        self.sources = sources

    async def fetch(self, version_id: str) -> Dict[str, Any]:
        corrupt: Optional[ManifestCorrupt] = None
        for source in self.sources:
            try:
                return await source.fetch(version_id)
            except ManifestNotFound:
                continue
            except ManifestCorrupt as e:
                log.warning(f"{type(source).__name__} has an unusable copy of {version_id}: {e}")
                corrupt = e
        if corrupt is not None:
            raise corrupt
        raise ManifestNotFound(version_id)

    async def resolve_alias(self, version_id: str) -> str:
        for source in self.sources:
            resolved = await source.resolve_alias(version_id)
            if resolved != version_id:
                return resolved
        return version_id


# --- Resolver ---

class ManifestResolver:
    """Produces effective manifests, cached by version id for the resolver's lifetime."""

    def __init__(self, catalog: ManifestCatalog, max_depth: int = MAX_INHERITANCE_DEPTH):
        self.catalog = catalog
        self.max_depth = max_depth
        self._cache: Dict[str, VersionManifest] = {}

    async def resolve(self, version_id: str) -> VersionManifest:
        cached = self._cache.get(version_id)
        if cached is not None:
            return cached

        chain: List[VersionManifest] = []
        seen = set()
        current: Optional[str] = version_id
        while current is not None:
            if current in seen or len(chain) >= self.max_depth:
                raise ManifestCorrupt(version_id, f"inheritance chain too deep or cyclic at '{current}'")
            seen.add(current)
            manifest = parse_manifest(await self.catalog.fetch(current))
            if manifest.id != current:
                log.warning(f"Manifest requested as '{current}' declares id '{manifest.id}'")
            chain.append(manifest)
            current = manifest.parent_id

        effective = chain[-1]
        for child in reversed(chain[:-1]):
            effective = merge_manifests(effective, child)
        if len(chain) == 1:
            log.info(f"Manifest {version_id} does not inherit from another version.")

        if not effective.main_class:
            raise ManifestCorrupt(version_id, "missing 'mainClass'")

        self._cache[version_id] = effective
        return effective
