import glob
import logging
import os
import pathlib
import platform
import re
import shutil
import subprocess
from typing import Callable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .errors import NoRuntimeFound, RuntimeTooOld
from .models import JavaRuntime

log = logging.getLogger(__name__)

DEFAULT_JAVA_VERSION = 8
PROBE_TIMEOUT = 10.0

# Glob patterns of installation roots, each match being a Java home.
WELL_KNOWN_HOMES = {
    'Linux': ['/usr/lib/jvm/*', '/usr/java/*', '/opt/java*', '/opt/jdk*', '/usr/local/java/*'],
    'Darwin': ['/Library/Java/JavaVirtualMachines/*', '/opt/homebrew/opt/openjdk*', '/usr/local/opt/openjdk*'],
    'Windows': [
        'C:\\Program Files\\Java\\*',
        'C:\\Program Files\\Eclipse Adoptium\\*',
        'C:\\Program Files\\Microsoft\\jdk-*',
        'C:\\Program Files\\Zulu\\*',
    ],
}

ProbeFn = Callable[[pathlib.Path], Tuple[int, str]]

_VERSION_RE = re.compile(r'version "([^"]+)"')
_BARE_VERSION_RE = re.compile(r'^\S+ (\d+(?:\.\d+)*)', re.MULTILINE)


def java_binary_name(system: Optional[str] = None) -> str:
    return 'java.exe' if (system or platform.system()) == 'Windows' else 'java'


def parse_java_version(output: str) -> Tuple[int, str]:
    """Extracts the major version from ``java -version`` output.

    ``version "1.8.0_392"`` gives 8, ``version "21.0.2"`` gives 21.
    """
    match = _VERSION_RE.search(output) or _BARE_VERSION_RE.search(output)
    if match is None:
        raise ValueError(f"no version in output: {output[:200]!r}")
    version = match.group(1)
    parts = re.split(r'[._+-]', version)
    try:
        major = int(parts[1]) if parts[0] == '1' and len(parts) > 1 else int(parts[0])
    except ValueError:
        raise ValueError(f"unparseable Java version: {version}")
    return major, version


def probe_java_version(java_path: pathlib.Path) -> Tuple[int, str]:
    """Runs ``<java> -version``; java prints it to stderr."""
    result = subprocess.run(
        [str(java_path), '-version'],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        timeout=PROBE_TIMEOUT,
        check=False,
    )
    output = result.stderr.decode(errors='ignore') + result.stdout.decode(errors='ignore')
    return parse_java_version(output)


def find_java_executable(home: pathlib.Path, system: Optional[str] = None) -> Optional[pathlib.Path]:
    """
    Finds the Java executable of an installation directory.

    Checks ``bin/java`` and the macOS bundle layout ``Contents/Home/bin/java``, first
    in the directory itself and then in its first subdirectory, which is how
    extracted runtime archives are laid out.
    """
    system = system or platform.system()
    if not home.is_dir():
        return None

    binary = java_binary_name(system)
    bases = [home]
    try:
        sub_dirs = sorted(entry for entry in home.iterdir() if entry.is_dir())
    except OSError as e:
        log.debug(f"Could not scan directory {home}: {e}")
        sub_dirs = []
    if sub_dirs and sub_dirs[0].name not in ('bin', 'Contents'):
        bases.append(sub_dirs[0])

    for base in bases:
        for candidate in (base / 'bin' / binary, base / 'Contents' / 'Home' / 'bin' / binary):
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate
    return None


class JavaRuntimeLocator:

    def __init__(self, search_dirs: Sequence[pathlib.Path] = (), probe: ProbeFn = probe_java_version,
                 env: Optional[Mapping[str, str]] = None, include_system: bool = True,
                 system: Optional[str] = None):
        self.search_dirs = [pathlib.Path(d) for d in search_dirs]
        self.probe = probe
        self.env = os.environ if env is None else env
        self.include_system = include_system
        self.system = system or platform.system()

    def candidates(self) -> Iterator[pathlib.Path]:
        """Possible executables in search order, without duplicates."""
        seen = set()

        def fresh(path: Optional[pathlib.Path]) -> bool:
            if path is None:
                return False
            key = os.path.realpath(path)
            if key in seen:
                return False
            seen.add(key)
            return True

        java_home = self.env.get('JAVA_HOME')
        if java_home:
            path = find_java_executable(pathlib.Path(java_home), self.system)
            if fresh(path):
                yield path

        for directory in self.search_dirs:
            homes = [directory]
            if directory.is_dir():
                homes += sorted(entry for entry in directory.iterdir() if entry.is_dir())
            for home in homes:
                path = find_java_executable(home, self.system)
                if fresh(path):
                    yield path

        if self.include_system:
            for pattern in WELL_KNOWN_HOMES.get(self.system, []):
                for home in sorted(glob.glob(pattern), reverse=True):
                    path = find_java_executable(pathlib.Path(home), self.system)
                    if fresh(path):
                        yield path

            on_path = shutil.which(java_binary_name(self.system), path=self.env.get('PATH'))
            if on_path is not None:
                path = pathlib.Path(on_path)
                if fresh(path):
                    yield path

    def _probe(self, path: pathlib.Path) -> Optional[JavaRuntime]:
        try:
            major, version = self.probe(path)
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            log.debug(f"Version probe of {path} failed: {e}")
            return None
        return JavaRuntime(path=path, major_version=major, version=version)

    def locate(self, required: Optional[int], override: Optional[pathlib.Path] = None) -> JavaRuntime:
        required = required or DEFAULT_JAVA_VERSION

        if override is not None:
            override = pathlib.Path(override)
            executable = find_java_executable(override, self.system) if override.is_dir() else override
            runtime = self._probe(executable) if executable is not None else None
            if runtime is None:
                raise NoRuntimeFound(required, [str(override)])
            if runtime.major_version < required:
                raise RuntimeTooOld(runtime.path, runtime.major_version, required)
            log.info(f"Using configured Java {runtime.version} at {runtime.path}")
            return runtime

        checked: List[str] = []
        for candidate in self.candidates():
            checked.append(str(candidate))
            runtime = self._probe(candidate)
            if runtime is None:
                continue
            if runtime.major_version >= required:
                log.info(f"Using Java {runtime.version} at {runtime.path}")
                return runtime
            log.debug(f"Java {runtime.version} at {candidate} is older than {required}")
        raise NoRuntimeFound(required, checked)
