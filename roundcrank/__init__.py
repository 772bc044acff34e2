from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("roundcrank")
except PackageNotFoundError:
    # Package is not installed (e.g. during local development)
    __version__ = "0.1.0-local"

__all__ = [
    "__version__",
]
