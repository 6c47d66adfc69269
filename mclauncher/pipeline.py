"""
The launch preparation pipeline.

Resolver -> graph builder -> downloads -> asset objects -> natives -> classpath ->
runtime -> command. Each stage only consumes the output of the ones before it; the
result is a ``LaunchPlan`` which the caller spawns (or prints).
"""
import asyncio
import functools
import logging
import pathlib
from typing import Optional

from .assets import asset_artifacts, load_asset_index, materialize_assets
from .classpath import assemble_classpath
from .config import LauncherConfig
from .download import CancelToken, DownloadOrchestrator, ProgressCallback
from .graph import DependencyGraphBuilder
from .http import AiohttpFetcher, Fetcher
from .java import JavaRuntimeLocator
from .launch import LaunchCommandBuilder, system_memory_mb
from .manifest import ChainCatalog, LocalCatalog, ManifestCatalog, ManifestResolver, RemoteCatalog
from .models import LaunchPlan, Platform, Profile
from .natives import NativeExtractor
from .rules import current_platform

log = logging.getLogger(__name__)


def default_catalog(config: LauncherConfig, fetcher: Fetcher) -> ManifestCatalog:
    """Installed versions first, then the official version list."""
    versions_dir = config.layout.versions_dir
    return ChainCatalog(LocalCatalog(versions_dir), RemoteCatalog(fetcher, store_dir=versions_dir))


async def prepare_launch(config: LauncherConfig, profile: Optional[Profile] = None, *,
                         catalog: Optional[ManifestCatalog] = None,
                         resolver: Optional[ManifestResolver] = None,
                         fetcher: Optional[Fetcher] = None,
                         locator: Optional[JavaRuntimeLocator] = None,
                         progress: Optional[ProgressCallback] = None,
                         cancel: Optional[CancelToken] = None,
                         total_memory_mb: Optional[int] = None,
                         platform: Optional[Platform] = None) -> LaunchPlan:
    """Runs every stage and returns the plan.

    Pass the same ``resolver`` to repeated calls to reuse its manifest cache; otherwise a
    resolver over ``catalog`` (or the default catalog) lives for this call only.
    """
    profile = profile or config.profile()
    layout = config.layout
    own_fetcher = fetcher is None
    if fetcher is None:
        fetcher = AiohttpFetcher()

    try:
        if resolver is None:
            resolver = ManifestResolver(catalog if catalog is not None else default_catalog(config, fetcher))
        catalog = resolver.catalog

        # 1. Resolve the version
        version_id = await catalog.resolve_alias(profile.version)
        if version_id != profile.version:
            log.info(f"Version '{profile.version}' resolves to {version_id}")
        manifest = await resolver.resolve(version_id)

        # 2. Artifact graph for this machine
        target = platform or current_platform(config.features())
        installation = DependencyGraphBuilder(target).build(manifest)

        # 3. Client, libraries, natives, asset index, log config
        orchestrator = DownloadOrchestrator(
            fetcher, layout.root,
            max_parallel=config.max_parallel_downloads,
            retries=config.download_retries,
            backoff=config.retry_backoff,
            progress=progress,
            cancel=cancel,
        )
        log.info(f"Checking game files for {version_id}...")
        report = await orchestrator.run(installation.artifacts())
        report.raise_for_failures()

        # 4. Asset objects
        game_assets = None
        if installation.asset_index is not None:
            log.info("Checking assets...")
            index = await load_asset_index(layout, manifest.asset_index.id)
            asset_report = await orchestrator.run(asset_artifacts(index))
            asset_report.raise_for_failures(allow_optional=config.allow_degraded_assets)
            game_assets = await materialize_assets(index, layout, layout.root)

        # 5. Natives
        log.info("Extracting native libraries...")
        natives_dir = layout.natives_dir(installation.version_id)
        await NativeExtractor(layout.root).extract(installation.natives, natives_dir)

        # 6. Classpath
        classpath = assemble_classpath(
            [layout.resolve(artifact.path) for artifact in installation.classpath],
            layout.resolve(installation.client_jar.path),
        )

        # 7. Runtime; probing spawns processes, keep it off the event loop
        if locator is None:
            locator = JavaRuntimeLocator(search_dirs=[*config.java_search_dirs, layout.runtime_dir])
        loop = asyncio.get_running_loop()
        runtime = await loop.run_in_executor(
            None, functools.partial(locator.locate, manifest.min_runtime, config.java_path))

        # 8. Command
        log_config_path: Optional[pathlib.Path] = None
        if installation.log_config is not None and report[installation.log_config.identity].ok:
            log_config_path = layout.resolve(installation.log_config.path)
        resolution = None
        if config.features()['has_custom_resolution']:
            resolution = (config.resolution_width, config.resolution_height)
        builder = LaunchCommandBuilder(
            layout.root,
            game_dir=layout.root,
            memory_safety_margin_mb=config.memory_safety_margin_mb,
            min_memory_mb=config.min_memory_mb,
            auth={
                'uuid': config.uuid or '',
                'access_token': config.access_token,
                'xuid': config.xuid,
                'user_type': config.user_type,
            },
            resolution=resolution,
        )
        if total_memory_mb is None:
            total_memory_mb = system_memory_mb()
        return builder.build(
            installation, classpath, natives_dir, runtime, profile, total_memory_mb,
            game_assets=game_assets, log_config_path=log_config_path,
        )
    finally:
        if own_fetcher:
            await fetcher.close()
