import logging
import os
import pathlib
import uuid
from typing import Dict, List, Optional

from .errors import InsufficientMemory
from .manifest import parse_arguments
from .models import JavaRuntime, LaunchPlan, Platform, Profile, ResolvedInstallation
from .replacer import expand, expand_all
from .rules import evaluate

log = logging.getLogger(__name__)

LAUNCHER_NAME = 'mclauncher'
LAUNCHER_VERSION = '1.0'
DEFAULT_RESOLUTION = ('854', '480')

# Old manifests only carry game arguments; these are the JVM arguments they expect.
DEFAULT_JVM_ARGUMENTS = parse_arguments([
    {"rules": [{"action": "allow", "os": {"name": "osx"}}], "value": ["-XstartOnFirstThread"]},
    {"rules": [{"action": "allow", "os": {"name": "windows"}}],
     "value": "-XX:HeapDumpPath=MojangTricksIntelDriversForPerformance_javaw.exe_minecraft.exe.heapdump"},
    {"rules": [{"action": "allow", "os": {"name": "windows", "version": "^10\\."}}],
     "value": ["-Dos.name=Windows 10", "-Dos.version=10.0"]},
    {"rules": [{"action": "allow", "os": {"arch": "x86"}}], "value": "-Xss1M"},
    "-Djava.library.path=${natives_directory}",
    "-Dminecraft.launcher.brand=${launcher_name}",
    "-Dminecraft.launcher.version=${launcher_version}",
    "-cp",
    "${classpath}",
])


def system_memory_mb() -> int:
    """Total physical memory in MB."""
    try:
        with open('/proc/meminfo', 'r', encoding='ascii') as f:
            for line in f:
                if line.startswith('MemTotal:'):
                    return int(line.split()[1]) // 1024
    except (OSError, ValueError, IndexError):
        pass
    try:
        return os.sysconf('SC_PAGE_SIZE') * os.sysconf('SC_PHYS_PAGES') // (1024 * 1024)
    except (AttributeError, ValueError, OSError) as e:
        raise InsufficientMemory(0, 0) from e


def clamp_memory(requested_mb: int, total_mb: int, margin_mb: int, minimum_mb: int) -> int:
    """Bounds a heap request by what the system can spare.

    The usable amount is the total minus ``margin_mb``. A request above the total is
    rejected; one between the usable amount and the total is lowered to it.
    """
    cap = total_mb - margin_mb
    if requested_mb > total_mb or cap < minimum_mb:
        raise InsufficientMemory(requested_mb, max(cap, 0))
    if requested_mb > cap:
        log.warning(f"Requested {requested_mb} MB exceeds the usable {cap} MB, lowering the heap limit.")
        return cap
    return max(requested_mb, minimum_mb)


def offline_uuid(username: str) -> str:
    return uuid.uuid3(uuid.NAMESPACE_OID, f"OfflinePlayer:{username}").hex


class LaunchCommandBuilder:
    """Turns a resolved installation into the ordered argument vector of the game process."""

    def __init__(self, root: pathlib.Path, game_dir: Optional[pathlib.Path] = None,
                 memory_safety_margin_mb: int = 1024, min_memory_mb: int = 512,
                 auth: Optional[Dict[str, str]] = None,
                 resolution: Optional[tuple] = None):
        self.root = pathlib.Path(root)
        self.game_dir = pathlib.Path(game_dir) if game_dir is not None else self.root
        self.memory_safety_margin_mb = memory_safety_margin_mb
        self.min_memory_mb = min_memory_mb
        self.auth = auth or {}
        self.resolution = resolution

    def placeholders(self, installation: ResolvedInstallation, profile: Profile, classpath: str,
                     natives_dir: pathlib.Path, game_assets: Optional[pathlib.Path] = None) -> Dict[str, str]:
        manifest = installation.manifest
        assets_root = self.root / 'assets'
        width, height = self.resolution or DEFAULT_RESOLUTION
        return {
            'natives_directory': str(natives_dir),
            'library_directory': str(self.root / 'libraries'),
            'classpath_separator': os.pathsep,
            'launcher_name': LAUNCHER_NAME,
            'launcher_version': LAUNCHER_VERSION,
            'classpath': classpath,
            'auth_player_name': profile.username,
            'version_name': installation.version_id,
            'game_directory': str(self.game_dir),
            'assets_root': str(assets_root),
            'game_assets': str(game_assets or assets_root),
            'assets_index_name': manifest.asset_index.id if manifest.asset_index else '',
            'auth_uuid': self.auth.get('uuid') or offline_uuid(profile.username),
            'auth_access_token': self.auth.get('access_token', '0'),
            'clientid': self.auth.get('clientid', 'N/A'),
            'auth_xuid': self.auth.get('xuid', '0'),
            'user_type': self.auth.get('user_type', 'msa'),
            'version_type': manifest.type or 'release',
            'resolution_width': str(width),
            'resolution_height': str(height),
        }

    def _expand_templates(self, templates, platform: Platform, values: Dict[str, str]) -> List[str]:
        arguments = []
        for template in templates:
            if not evaluate(template.rules, platform):
                continue
            arguments.extend(expand_all(template.values, values))
        return arguments

    def build(self, installation: ResolvedInstallation, classpath: str, natives_dir: pathlib.Path,
              runtime: JavaRuntime, profile: Profile, total_memory_mb: int,
              game_assets: Optional[pathlib.Path] = None,
              log_config_path: Optional[pathlib.Path] = None) -> LaunchPlan:
        """Produces the plan; ``log_config_path`` is given only when the file is on disk."""
        max_mb = clamp_memory(profile.memory_mb, total_memory_mb, self.memory_safety_margin_mb, self.min_memory_mb)
        min_mb = max_mb // 2
        manifest = installation.manifest
        platform = installation.platform
        values = self.placeholders(installation, profile, classpath, natives_dir, game_assets)

        jvm_templates = manifest.jvm_arguments
        if not jvm_templates:
            jvm_templates = DEFAULT_JVM_ARGUMENTS

        arguments = [f"-Xms{min_mb}M", f"-Xmx{max_mb}M"]
        arguments += self._expand_templates(jvm_templates, platform, values)
        if manifest.log_config is not None and manifest.log_config.argument and log_config_path is not None:
            arguments.append(expand(manifest.log_config.argument, {'path': str(log_config_path)}))
        arguments.append(manifest.main_class)
        arguments += self._expand_templates(manifest.game_arguments, platform, values)

        log.info(f"Launch command ready: {manifest.main_class} with {max_mb} MB heap, "
                 f"{len(arguments)} argument(s)")
        return LaunchPlan(
            executable=runtime.path,
            min_memory_mb=min_mb,
            max_memory_mb=max_mb,
            classpath=classpath,
            natives_dir=natives_dir,
            main_class=manifest.main_class,
            arguments=tuple(arguments),
            working_dir=self.game_dir,
        )
