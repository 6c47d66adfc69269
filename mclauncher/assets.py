import asyncio
import json
import logging
import pathlib
import shutil
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os

from .config import StoreLayout
from .errors import ManifestCorrupt
from .models import Artifact, ArtifactKind, AssetIndex, AssetObject

log = logging.getLogger(__name__)

RESOURCES_URL = 'https://resources.download.minecraft.net'


def parse_asset_index(index_id: str, document: Dict[str, Any]) -> AssetIndex:
    objects = document.get('objects') if isinstance(document, dict) else None
    if not isinstance(objects, dict):
        raise ManifestCorrupt(f"asset index {index_id}", "missing 'objects'")

    parsed = []
    for name, details in objects.items():
        asset_hash = (details or {}).get('hash')
        if not asset_hash:
            log.warning(f"Asset '{name}' is missing hash in index, skipping.")
            continue
        parsed.append(AssetObject(name=name, sha1=asset_hash.lower(), size=details.get('size')))

    return AssetIndex(
        id=index_id,
        objects=tuple(parsed),
        virtual=bool(document.get('virtual', False)),
        map_to_resources=bool(document.get('map_to_resources', False)),
    )


async def load_asset_index(layout: StoreLayout, index_id: str) -> AssetIndex:
    index_path = layout.asset_indexes_dir / f"{index_id}.json"
    try:
        async with aiofiles.open(index_path, 'r', encoding='utf-8') as f:
            document = json.loads(await f.read())
    except (OSError, json.JSONDecodeError) as e:
        raise ManifestCorrupt(f"asset index {index_id}", f"failed to read {index_path}: {e}") from e
    return parse_asset_index(index_id, document)


def asset_artifacts(index: AssetIndex) -> List[Artifact]:
    """One optional artifact per distinct object hash; the hash is the storage key."""
    seen = set()
    artifacts = []
    for obj in index.objects:
        if obj.sha1 in seen:
            continue
        seen.add(obj.sha1)
        prefix = obj.sha1[:2]
        artifacts.append(Artifact(
            identity=f"asset:{obj.sha1}",
            kind=ArtifactKind.ASSET,
            url=f"{RESOURCES_URL}/{prefix}/{obj.sha1}",
            path=f"assets/objects/{prefix}/{obj.sha1}",
            sha1=obj.sha1,
            size=obj.size,
            optional=True,
        ))
    return artifacts


def _copy_objects(pairs: List[tuple]) -> int:
    copied = 0
    for source, target in pairs:
        if not source.is_file():
            continue
        if target.is_file() and target.stat().st_size == source.stat().st_size:
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        copied += 1
    return copied


async def materialize_assets(index: AssetIndex, layout: StoreLayout, game_dir: pathlib.Path) -> Optional[pathlib.Path]:
    """Copies objects of legacy indexes to the name-addressed tree old versions read.

    Returns the directory to use for ``${game_assets}``, or ``None`` for modern indexes.
    """
    if index.map_to_resources:
        target_root = game_dir / 'resources'
    elif index.virtual:
        target_root = layout.assets_dir / 'virtual' / index.id
    else:
        return None

    pairs = [(layout.asset_object(obj.sha1), target_root.joinpath(*obj.name.split('/'))) for obj in index.objects]
    await aiofiles.os.makedirs(target_root, exist_ok=True)
    loop = asyncio.get_running_loop()
    copied = await loop.run_in_executor(None, _copy_objects, pairs)
    log.info(f"Copied {copied} legacy asset file(s) to {target_root}")
    return target_root
