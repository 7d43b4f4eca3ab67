"""Version information for botfleet.

Read from the packaged VERSION file, falling back to the installed
distribution metadata.
"""

from importlib import metadata
from pathlib import Path


def get_version() -> str:
    """Get the botfleet version.

    Returns:
        Version string (e.g., "0.3.0")
    """
    version_file = Path(__file__).parent / "VERSION"
    if version_file.exists():
        version = version_file.read_text().strip()
        if version:
            return version

    try:
        return metadata.version("botfleet")
    except metadata.PackageNotFoundError:
        return "0.0.0"


__version__ = get_version()
