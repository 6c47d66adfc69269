"""Shared helpers: an in-memory fetcher and a small but complete version document."""
import contextlib
import hashlib
import io
import json
import zipfile
from typing import Callable, Dict, List, Optional, Tuple

from mclauncher.errors import ManifestNotFound
from mclauncher.http import FetchError, FetchResponse, Fetcher
from mclauncher.manifest import ManifestCatalog
from mclauncher.models import Platform

BASE_URL = 'https://files.example.invalid'
CHUNK_SIZE = 4

LINUX_X64 = Platform(os_family='linux', arch='x64')


def sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def make_jar(members: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as jar:
        for name, content in members.items():
            jar.writestr(name, content)
    return buffer.getvalue()


class FakeFetcher(Fetcher):
    """Serves ``files`` from memory and records every request as ``(url, offset)``."""

    def __init__(self, files: Optional[Dict[str, bytes]] = None):
        self.files = dict(files or {})
        self.failures: Dict[str, int] = {}
        self.truncate: Dict[str, int] = {}
        self.honor_range = True
        self.calls: List[Tuple[str, int]] = []
        self.on_chunk: Optional[Callable[[str], None]] = None
        self.closed = False

    def fail(self, url: str, times: int) -> None:
        self.failures[url] = times

    def requests_for(self, url: str) -> List[int]:
        return [offset for called, offset in self.calls if called == url]

    @property
    def download_calls(self) -> List[str]:
        return [url for url, _ in self.calls]

    @contextlib.asynccontextmanager
    async def open(self, url: str, offset: int = 0):
        self.calls.append((url, offset))
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise FetchError(url, 503, 'Service Unavailable')
        if url not in self.files:
            raise FetchError(url, 404, 'Not Found')

        data = self.files[url]
        resumed = offset > 0 and self.honor_range
        body = data[offset:] if resumed else data
        limit = self.truncate.pop(url, None)
        if limit is not None:
            body = body[:limit]

        async def chunks():
            for start in range(0, len(body), CHUNK_SIZE):
                if self.on_chunk is not None:
                    self.on_chunk(url)
                yield body[start:start + CHUNK_SIZE]

        yield FetchResponse(chunks(), total=len(data), resumed=resumed)

    async def close(self) -> None:
        self.closed = True


def download(url_path: str, data: bytes, **extra) -> dict:
    entry = {'url': f"{BASE_URL}/{url_path}", 'sha1': sha1(data), 'size': len(data)}
    entry.update(extra)
    return entry


def sample_version(version_id: str = '1.21.8') -> Tuple[dict, Dict[str, bytes]]:
    """A modern version document plus every file it references, keyed by URL.

    One plain library, one Linux natives library, one Windows natives library,
    the client jar, an asset index with one object and a log configuration.
    """
    client = b'client jar for ' + version_id.encode()
    core = make_jar({'com/example/Core.class': b'\xca\xfe\xba\xbe'})
    lwjgl_linux = make_jar({'liblwjgl.so': b'\x7fELF-lwjgl', 'META-INF/MANIFEST.MF': b'Manifest-Version: 1.0\n'})
    lwjgl_windows = make_jar({'lwjgl.dll': b'MZ-lwjgl'})
    asset = b'ogg sound bytes'
    index = json.dumps({'objects': {'minecraft/sounds/click.ogg': {'hash': sha1(asset), 'size': len(asset)}}}).encode()
    log_config = b'<Configuration/>'

    files = {
        f"{BASE_URL}/client.jar": client,
        f"{BASE_URL}/libraries/core-1.0.jar": core,
        f"{BASE_URL}/libraries/lwjgl-3.3.3-natives-linux.jar": lwjgl_linux,
        f"{BASE_URL}/libraries/lwjgl-3.3.3-natives-windows.jar": lwjgl_windows,
        f"{BASE_URL}/indexes/26.json": index,
        f"https://resources.download.minecraft.net/{sha1(asset)[:2]}/{sha1(asset)}": asset,
        f"{BASE_URL}/client-1.21.2.xml": log_config,
    }

    document = {
        'id': version_id,
        'type': 'release',
        'mainClass': 'net.minecraft.client.main.Main',
        'javaVersion': {'component': 'java-runtime-delta', 'majorVersion': 21},
        'arguments': {
            'game': [
                '--username', '${auth_player_name}',
                '--version', '${version_name}',
                '--gameDir', '${game_directory}',
                '--assetsDir', '${assets_root}',
                '--assetIndex', '${assets_index_name}',
                {'rules': [{'action': 'allow', 'features': {'is_demo_user': True}}], 'value': '--demo'},
            ],
            'jvm': [
                {'rules': [{'action': 'allow', 'os': {'name': 'osx'}}], 'value': ['-XstartOnFirstThread']},
                '-Djava.library.path=${natives_directory}',
                '-cp',
                '${classpath}',
            ],
        },
        'assetIndex': dict(download('indexes/26.json', index), id='26', totalSize=len(asset)),
        'downloads': {'client': download('client.jar', client)},
        'logging': {'client': {
            'argument': '-Dlog4j.configurationFile=${path}',
            'file': dict(download('client-1.21.2.xml', log_config), id='client-1.21.2.xml'),
            'type': 'log4j2-xml',
        }},
        'libraries': [
            {'name': 'com.example:core:1.0', 'downloads': {'artifact': download(
                'libraries/core-1.0.jar', core, path='com/example/core/1.0/core-1.0.jar')}},
            {'name': 'org.lwjgl:lwjgl:3.3.3:natives-linux',
             'downloads': {'artifact': download(
                 'libraries/lwjgl-3.3.3-natives-linux.jar', lwjgl_linux,
                 path='org/lwjgl/lwjgl/3.3.3/lwjgl-3.3.3-natives-linux.jar')},
             'rules': [{'action': 'allow', 'os': {'name': 'linux'}}]},
            {'name': 'org.lwjgl:lwjgl:3.3.3:natives-windows',
             'downloads': {'artifact': download(
                 'libraries/lwjgl-3.3.3-natives-windows.jar', lwjgl_windows,
                 path='org/lwjgl/lwjgl/3.3.3/lwjgl-3.3.3-natives-windows.jar')},
             'rules': [{'action': 'allow', 'os': {'name': 'windows'}}]},
        ],
    }
    return document, files


class DictCatalog(ManifestCatalog):
    """Catalog over in-memory documents, counting fetches per id."""

    def __init__(self, *documents: dict):
        self.documents = {doc['id']: doc for doc in documents}
        self.fetches: Dict[str, int] = {}

    async def fetch(self, version_id: str) -> dict:
        self.fetches[version_id] = self.fetches.get(version_id, 0) + 1
        if version_id not in self.documents:
            raise ManifestNotFound(version_id)
        return json.loads(json.dumps(self.documents[version_id]))

    async def resolve_alias(self, version_id: str) -> str:
        return version_id
