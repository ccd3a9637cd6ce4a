__all__ = ["__version__"]

# Derive the package version from installed distribution metadata when
# available. When running from a bare source checkout fall back to a local
# dev version string.
from importlib.metadata import version, PackageNotFoundError

try:
	__version__ = version("recipe-feed-server")
except PackageNotFoundError:
	__version__ = "0.0.0+local"
