import argparse
import asyncio
import logging
import pathlib
import shlex
import sys
from typing import Dict, List, Optional

from tqdm.asyncio import tqdm  # Use tqdm's async version

from . import __version__
from .config import load_config
from .errors import LauncherError
from .models import LaunchPlan, ProgressEvent
from .pipeline import prepare_launch

log = logging.getLogger(__name__)


class DownloadProgress:
    """Feeds orchestrator progress events into one byte-based tqdm bar."""

    def __init__(self):
        self.bar = tqdm(total=0, desc="Downloading", unit="B", unit_scale=True, leave=False)
        self._done: Dict[str, int] = {}

    def __call__(self, event: ProgressEvent) -> None:
        previous = self._done.get(event.identity)
        if previous is None and event.total:
            self.bar.total += event.total
            self.bar.refresh()
        delta = event.done - (previous or 0)
        self._done[event.identity] = event.done
        if delta > 0:
            self.bar.update(delta)

    def close(self) -> None:
        self.bar.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='mclauncher', description='Prepare and launch a game version.')
    parser.add_argument('--version', dest='version', help="version id, or 'release' / 'snapshot'")
    parser.add_argument('--username', help='player name')
    parser.add_argument('--memory', type=int, metavar='MB', help='maximum heap size in MB')
    parser.add_argument('--java', type=pathlib.Path, help='Java executable or installation to use')
    parser.add_argument('--root', type=pathlib.Path, help='game data directory')
    parser.add_argument('--config-dir', type=pathlib.Path, default=pathlib.Path.cwd(),
                        help='directory holding launcher_config.json and config.json')
    parser.add_argument('--dry-run', action='store_true', help='print the launch command instead of running it')
    parser.add_argument('--verbose', '-v', action='store_true', help='debug logging')
    parser.add_argument('--launcher-version', action='version', version=f'%(prog)s {__version__}')
    return parser.parse_args(argv)


async def spawn(plan: LaunchPlan) -> int:
    """Runs the game with inherited stdio and waits for it to exit."""
    log.info("Attempting to launch Minecraft...")
    # stdin, stdout and stderr are inherited
    process = await asyncio.create_subprocess_exec(*plan.command, cwd=str(plan.working_dir))
    log.info(f"Minecraft process started (PID: {process.pid}). Waiting for exit...")
    return_code = await process.wait()
    log.info(f"Minecraft process exited with code {return_code}.")
    return return_code


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(asctime)s - %(levelname)s - %(message)s')

    progress = DownloadProgress()
    try:
        config = load_config(args.config_dir, overrides={
            'version': args.version,
            'username': args.username,
            'memory_mb': args.memory,
            'java_path': args.java,
            'base_dir': args.root,
        })
        log.info(f"Preparing {config.version} in {config.base_dir}")
        plan = await prepare_launch(config, progress=progress)
    except LauncherError as e:
        log.error(f"--- Launch preparation failed: {e} ---")
        log.debug("Details:", exc_info=True)
        return 1
    finally:
        progress.close()

    if args.dry_run:
        print(shlex.join(plan.command))
        return 0
    try:
        return await spawn(plan)
    except OSError as e:
        log.error(f"Could not start {plan.executable}: {e}")
        return 1


def run() -> int:
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        log.info("Launch cancelled by user.")
        return 130


# --- Script Entry Point ---
if __name__ == "__main__":
    sys.exit(run())
