import asyncio
import hashlib
import logging
import os
import pathlib
import shutil
import uuid
import zipfile
from typing import Iterable, List, Sequence

from .errors import ExtractionFailed
from .models import NativeArchive

log = logging.getLogger(__name__)

FINGERPRINT_FILE = '.natives-fingerprint'
# Never loadable, even when an archive's exclude list forgets them.
SKIPPED_SUFFIXES = ('.sha1', '.git', '.class')


def _fingerprint(archives: Sequence[tuple]) -> str:
    digest = hashlib.sha1()
    for path, excludes in archives:
        try:
            stat = path.stat()
        except OSError as e:
            raise ExtractionFailed(path, f"archive unavailable: {e}") from e
        digest.update(f"{path.name}|{stat.st_size}|{int(stat.st_mtime)}|{','.join(excludes)}\n".encode())
    return digest.hexdigest()


def _is_excluded(name: str, excludes: Iterable[str]) -> bool:
    return any(name.startswith(prefix) for prefix in excludes) or name.lower().endswith(SKIPPED_SUFFIXES)


def _extract_zip_sync(jar_path: pathlib.Path, excludes: Sequence[str], extract_to_dir: pathlib.Path) -> int:
    """Extracts every loadable file of the archive, flattened into ``extract_to_dir``."""
    count = 0
    try:
        with zipfile.ZipFile(jar_path, 'r') as zip_ref:
            for member in zip_ref.infolist():
                if member.is_dir() or _is_excluded(member.filename, excludes):
                    continue
                file_name = pathlib.PurePosixPath(member.filename).name
                if not file_name:
                    continue
                with zip_ref.open(member) as source, open(extract_to_dir / file_name, 'wb') as target:
                    shutil.copyfileobj(source, target)
                count += 1
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as e:
        raise ExtractionFailed(jar_path, str(e) or 'corrupt archive') from e
    except OSError as e:
        raise ExtractionFailed(jar_path, str(e)) from e
    return count


def _extract_all_sync(archives: List[tuple], natives_dir: pathlib.Path) -> bool:
    fingerprint = _fingerprint(archives)
    marker = natives_dir / FINGERPRINT_FILE
    if marker.is_file() and marker.read_text(encoding='utf-8').strip() == fingerprint:
        log.info(f"Natives in {natives_dir} are up to date.")
        return False

    natives_dir.parent.mkdir(parents=True, exist_ok=True)
    staging = natives_dir.with_name(f".{natives_dir.name}.staging-{uuid.uuid4().hex[:8]}")
    staging.mkdir()
    try:
        total = 0
        for path, excludes in archives:
            total += _extract_zip_sync(path, excludes, staging)
        (staging / FINGERPRINT_FILE).write_text(fingerprint, encoding='utf-8')
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    # Promote: the old directory only disappears once the new one is complete.
    retired = None
    try:
        if natives_dir.exists():
            retired = natives_dir.with_name(f".{natives_dir.name}.old-{uuid.uuid4().hex[:8]}")
            os.replace(natives_dir, retired)
        os.replace(staging, natives_dir)
    except OSError as e:
        shutil.rmtree(staging, ignore_errors=True)
        if retired is not None and not natives_dir.exists():
            try:
                os.replace(retired, natives_dir)
            except OSError:
                log.warning(f"Previous natives left in {retired}")
        raise ExtractionFailed(natives_dir, f"could not replace the natives directory: {e}") from e
    if retired is not None:
        shutil.rmtree(retired, ignore_errors=True)
    log.info(f"Extracted {total} native file(s) from {len(archives)} archive(s) into {natives_dir}")
    return True


class NativeExtractor:
    """Populates a version's natives directory from its native archives."""

    def __init__(self, root: pathlib.Path):
        self.root = pathlib.Path(root)

    async def extract(self, archives: Sequence[NativeArchive], natives_dir: pathlib.Path) -> bool:
        """Returns ``False`` when the directory was reused unchanged."""
        resolved = [(self.root.joinpath(*a.artifact.path.split('/')), tuple(a.exclude)) for a in archives]
        if not resolved:
            log.info("No native libraries to extract for this platform.")
            natives_dir.mkdir(parents=True, exist_ok=True)
            return False
        loop = asyncio.get_running_loop()
        # Run the synchronous extraction function in a thread pool executor
        return await loop.run_in_executor(None, _extract_all_sync, resolved, natives_dir)
