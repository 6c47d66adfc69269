"""Resolves, downloads and launches game versions from their version manifests."""
from .config import LauncherConfig, StoreLayout, load_config
from .errors import LauncherError
from .models import LaunchPlan, Profile
from .pipeline import prepare_launch

__version__ = '1.0.0'

__all__ = ['LauncherConfig', 'LauncherError', 'LaunchPlan', 'Profile', 'StoreLayout', 'load_config',
           'prepare_launch', '__version__']
