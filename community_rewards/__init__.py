"""community-rewards: Cross-platform engagement currency, achievements and shop."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("community-rewards")
except PackageNotFoundError:
    __version__ = "0.0.0"
