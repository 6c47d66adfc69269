import pathlib
from typing import List, Optional


class LauncherError(Exception):
    """Base class of every error the launcher core raises."""


class ConfigError(LauncherError):
    pass


class ManifestNotFound(LauncherError):
    def __init__(self, version_id: str):
        super().__init__(f"Version manifest not found: {version_id}")
        self.version_id = version_id


class ManifestCorrupt(LauncherError):
    def __init__(self, version_id: str, reason: str):
        super().__init__(f"Version manifest {version_id} is invalid: {reason}")
        self.version_id = version_id
        self.reason = reason


class NoArtifactForPlatform(LauncherError):
    def __init__(self, artifact: str, platform: str):
        super().__init__(f"No artifact '{artifact}' available for platform {platform}")
        self.artifact = artifact
        self.platform = platform


class DownloadFailed(LauncherError):
    def __init__(self, artifact: str, reason: str, attempts: int = 0):
        super().__init__(f"Download of {artifact} failed after {attempts} attempt(s): {reason}")
        self.artifact = artifact
        self.reason = reason
        self.attempts = attempts


class DownloadAggregateError(DownloadFailed):
    """Raised when at least one mandatory artifact of a run could not be acquired.

    ``failures`` holds every failed artifact of the run, mandatory or not, so the
    caller can render the complete picture.
    """

    def __init__(self, failures: List[DownloadFailed]):
        names = ", ".join(f.artifact for f in failures[:5])
        more = f" (+{len(failures) - 5} more)" if len(failures) > 5 else ""
        LauncherError.__init__(self, f"{len(failures)} download(s) failed: {names}{more}")
        self.artifact = failures[0].artifact if failures else ""
        self.reason = failures[0].reason if failures else ""
        self.attempts = failures[0].attempts if failures else 0
        self.failures = failures


class ExtractionFailed(LauncherError):
    def __init__(self, archive: pathlib.Path, reason: str):
        super().__init__(f"Could not extract natives from {archive.name}: {reason}")
        self.archive = archive
        self.reason = reason


class NoRuntimeFound(LauncherError):
    def __init__(self, required: int, checked: Optional[List[str]] = None):
        super().__init__(f"No Java runtime with major version >= {required} found")
        self.required = required
        self.checked = checked or []


class RuntimeTooOld(LauncherError):
    def __init__(self, path: pathlib.Path, found: int, required: int):
        super().__init__(f"Java at {path} is version {found}, version {required} or newer is required")
        self.path = path
        self.found = found
        self.required = required


class InsufficientMemory(LauncherError):
    def __init__(self, requested_mb: int, available_mb: int):
        super().__init__(f"Cannot allocate {requested_mb} MB, only {available_mb} MB usable on this system")
        self.requested_mb = requested_mb
        self.available_mb = available_mb


class EmptyClasspath(LauncherError):
    def __init__(self):
        super().__init__("Classpath is empty")


class Cancelled(LauncherError):
    def __init__(self, completed: int = 0):
        super().__init__(f"Launch preparation cancelled ({completed} artifact(s) completed)")
        self.completed = completed
