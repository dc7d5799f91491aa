"""Version metadata for ispyc and the minimum compiler versions it relies on."""

from __future__ import annotations

from importlib import metadata as importlib_metadata

from packaging.version import Version


DISTRIBUTION: str = "ispyc"
FALLBACK_VERSION: str = "0.1.0"

# compiler releases that introduced optional features
MIN_INSTRUMENT_VERSION = Version("1.9.1")
MIN_DISABLE_ZMM_VERSION = Version("1.13.0")


def _load_version() -> str:
    # source checkouts that were never installed have no distribution metadata
    try:
        version = importlib_metadata.version(DISTRIBUTION).strip()
    except importlib_metadata.PackageNotFoundError:
        return FALLBACK_VERSION
    return version or FALLBACK_VERSION


__version__ = _load_version()
