"""Package version, taken from the installed distribution when there is one."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION = "livepoll-realtime"
SOURCE_TREE_VERSION = "0.1.0+source"

try:
    __version__ = version(DISTRIBUTION)
except PackageNotFoundError:  # running from a checkout without `pip install -e .`
    __version__ = SOURCE_TREE_VERSION
